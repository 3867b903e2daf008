"""Health check endpoints

- /health       - process and proxy status
- /health/live  - liveness probe (process alive)
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..config import settings
from ..dependencies import get_proxy_client
from ..services.proxy_client import ProxyClient

router = APIRouter(prefix="/health", tags=["Health"])


class HealthCheck(BaseModel):
    """Health check response model."""
    status: str
    version: str
    timestamp: str
    checks: Optional[dict] = None


@router.get("/live", response_model=HealthCheck)
async def liveness():
    return HealthCheck(
        status="healthy",
        version=settings.VERSION,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.get("", response_model=HealthCheck)
async def health(proxy: ProxyClient = Depends(get_proxy_client)):
    """
    Report proxy health and circuit breaker state.

    The control plane stays up when the proxy is down, so the overall status
    is "degraded" rather than an error response.
    """
    proxy_health = await proxy.get_health()
    metrics = proxy.get_metrics()
    proxy_ok = proxy_health.get("status") == "healthy"

    return HealthCheck(
        status="healthy" if proxy_ok else "degraded",
        version=settings.VERSION,
        timestamp=datetime.now(timezone.utc).isoformat(),
        checks={
            "proxy": proxy_health,
            "circuit_breaker": metrics["circuit_breaker"],
            "cache": metrics["cache"],
        },
    )
