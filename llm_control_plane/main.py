# SPDX-License-Identifier: Apache-2.0
# Copyright 2024-2026 CAB Ingénierie / Christophe ABOULICAM
"""
LLM Control Plane
FastAPI backend governing model access, subscriptions and proxy API keys
"""
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .database import close_db
from .errors import ControlPlaneError
from .logging_config import bind_context, clear_context, configure_logging, get_logger
from .routers import admin_models, api_keys, health, usage
from .services.proxy_client import ProxyClient

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging()
    logger.info("Starting LLM Control Plane", version=settings.VERSION, environment=settings.ENVIRONMENT)

    proxy_client = ProxyClient()
    await proxy_client.connect()
    app.state.proxy_client = proxy_client

    yield

    # Shutdown
    logger.info("Shutting down...")
    await proxy_client.disconnect()
    await close_db()


app = FastAPI(
    title="LLM Control Plane",
    description="Model catalog, subscriptions and API keys for a shared LLM proxy",
    version=settings.VERSION,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    clear_context()
    bind_context(
        request_id=request.headers.get("X-Request-Id") or str(uuid.uuid4()),
        user_id=request.headers.get("X-User-Id"),
    )
    return await call_next(request)


@app.exception_handler(ControlPlaneError)
async def control_plane_error_handler(request: Request, exc: ControlPlaneError):
    if exc.http_status >= 500:
        logger.error("Request failed", path=request.url.path, code=exc.code.value, error=exc.message)
    else:
        logger.info("Request rejected", path=request.url.path, code=exc.code.value, error=exc.message)
    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_response().model_dump(exclude_none=True),
    )


# Routers
app.include_router(health.router)
app.include_router(api_keys.router)
app.include_router(admin_models.router)
app.include_router(usage.router)


@app.get("/")
async def root():
    return {
        "name": settings.APP_NAME,
        "version": settings.VERSION,
        "docs": "/docs",
    }
