"""FastAPI dependencies: caller identity, shared proxy client, service factories"""
import logging
from typing import List

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from .database import get_db
from .models.user import User
from .services.api_key_service import ApiKeyService
from .services.model_admin_service import ModelAdminService
from .services.model_sync_service import ModelSyncService
from .services.proxy_client import ProxyClient
from .services.subscription_cascade_service import SubscriptionCascadeService

logger = logging.getLogger(__name__)

ADMIN_ROLES = ["admin"]


def get_proxy_client(request: Request) -> ProxyClient:
    """The process-wide proxy client created in the app lifespan"""
    client = getattr(request.app.state, "proxy_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Proxy client not initialized",
        )
    return client


async def get_current_user(
    x_user_id: str = Header(..., alias="X-User-Id"),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the caller forwarded by the authentication gateway"""
    user = await db.get(User, x_user_id)
    if user is None or not user.is_active:
        logger.warning(f"Rejected request for unknown or inactive user {x_user_id}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown or inactive user",
        )
    return user


def require_role(allowed_roles: List[str]):
    """
    Dependency factory that checks if the caller has one of the allowed roles.

    Usage:
        @router.post("/sync")
        async def trigger_sync(user: User = Depends(require_role(["admin"]))):
            ...
    """

    async def role_checker(user: User = Depends(get_current_user)) -> User:
        if not any(role in (user.roles or []) for role in allowed_roles):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {allowed_roles}",
            )
        return user

    return role_checker


require_admin = require_role(ADMIN_ROLES)


def get_api_key_service(
    db: AsyncSession = Depends(get_db),
    proxy: ProxyClient = Depends(get_proxy_client),
) -> ApiKeyService:
    return ApiKeyService(db, proxy)


def get_model_sync_service(
    db: AsyncSession = Depends(get_db),
    proxy: ProxyClient = Depends(get_proxy_client),
) -> ModelSyncService:
    return ModelSyncService(db, proxy)


def get_model_admin_service(
    db: AsyncSession = Depends(get_db),
    proxy: ProxyClient = Depends(get_proxy_client),
) -> ModelAdminService:
    return ModelAdminService(db, proxy)


def get_subscription_cascade_service(
    db: AsyncSession = Depends(get_db),
    proxy: ProxyClient = Depends(get_proxy_client),
) -> SubscriptionCascadeService:
    return SubscriptionCascadeService(db, ApiKeyService(db, proxy))
