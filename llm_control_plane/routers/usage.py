"""Usage router - daily spend and token activity reported by the proxy"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..dependencies import get_current_user, get_proxy_client, require_admin
from ..models.user import User
from ..schemas.proxy import DailyActivity
from ..services.proxy_client import ProxyClient

router = APIRouter(tags=["Usage"])


@router.get("/v1/usage/daily", response_model=DailyActivity)
async def get_my_daily_activity(
    start_date: Optional[str] = Query(None, description="YYYY-MM-DD"),
    end_date: Optional[str] = Query(None, description="YYYY-MM-DD"),
    user: User = Depends(get_current_user),
    proxy: ProxyClient = Depends(get_proxy_client),
):
    return await proxy.get_daily_activity(start_date=start_date, end_date=end_date, user_id=user.id)


@router.get("/v1/admin/usage/daily", response_model=DailyActivity)
async def get_daily_activity(
    start_date: Optional[str] = Query(None, description="YYYY-MM-DD"),
    end_date: Optional[str] = Query(None, description="YYYY-MM-DD"),
    user_id: Optional[str] = None,
    admin: User = Depends(require_admin),
    proxy: ProxyClient = Depends(get_proxy_client),
):
    """Platform-wide activity, or one user's when `user_id` is given."""
    return await proxy.get_daily_activity(start_date=start_date, end_date=end_date, user_id=user_id)


@router.post("/v1/admin/proxy/cache/clear")
async def clear_proxy_cache(
    activity_only: bool = False,
    admin: User = Depends(require_admin),
    proxy: ProxyClient = Depends(get_proxy_client),
):
    if activity_only:
        await proxy.clear_activity_cache()
    else:
        await proxy.clear_cache()
    return {"cleared": "activity" if activity_only else "all"}
