# SPDX-License-Identifier: Apache-2.0
# Copyright 2024-2026 CAB Ingénierie / Christophe ABOULICAM
"""Shared pytest fixtures: in-memory database, fake proxy, API client."""

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from llm_control_plane.database import Base, get_db
from llm_control_plane.dependencies import get_proxy_client
from llm_control_plane.models import User
from llm_control_plane.models.user import SYSTEM_USER_EMAIL, SYSTEM_USER_ID
from llm_control_plane.services.cache_service import TTLCache
from llm_control_plane.services.proxy_client import ProxyClient

from helpers import FakeProxy

TEST_DATABASE_URL = "sqlite+aiosqlite://"


# ============== Fake proxy ==============

@pytest.fixture
def fake_proxy() -> FakeProxy:
    return FakeProxy()


@pytest.fixture
async def proxy_client(fake_proxy: FakeProxy):
    """ProxyClient wired to the fake proxy; no retries delay, fresh cache and breaker."""
    client = ProxyClient(
        base_url="http://proxy.test",
        api_key="test-master-key",
        retry_attempts=1,
        retry_delay=0,
        mock_mode=False,
        cache=TTLCache(default_ttl_seconds=300),
        transport=httpx.MockTransport(fake_proxy),
    )
    await client.connect()
    yield client
    await client.disconnect()


# ============== Database ==============

@pytest.fixture(scope="function")
async def db_engine():
    """In-memory SQLite engine with foreign keys enforced."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(db_engine):
    async_session_maker = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    async with async_session_maker() as session:
        session.add(User(id=SYSTEM_USER_ID, username="system", email=SYSTEM_USER_EMAIL, roles=["system"]))
        await session.commit()
        yield session
        await session.rollback()


# ============== App & client ==============

@pytest.fixture
def app():
    from llm_control_plane.main import app
    return app


@pytest.fixture(scope="function")
async def client(app, db_session, proxy_client):
    """Async test client with database and proxy overrides."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_proxy_client] = lambda: proxy_client

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
