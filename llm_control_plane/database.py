# SPDX-License-Identifier: Apache-2.0
# Copyright 2024-2026 CAB Ingénierie / Christophe ABOULICAM
"""Database session management for the LLM Control Plane"""
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from .errors import ConflictError

# Base class for models - must be importable without side effects
Base = declarative_base()

# Lazy initialization so alembic (sync driver) can import models
_engine = None
_async_session_local = None


def _get_engine():
    """Lazily create the async engine."""
    global _engine
    if _engine is None:
        from .config import settings
        kwargs = {"echo": settings.DEBUG}
        if not settings.DATABASE_URL.startswith("sqlite"):
            kwargs["pool_size"] = settings.DATABASE_POOL_SIZE
            kwargs["max_overflow"] = settings.DATABASE_MAX_OVERFLOW
        _engine = create_async_engine(settings.DATABASE_URL, **kwargs)
    return _engine


def get_session_factory() -> async_sessionmaker:
    """Lazily create the session factory."""
    global _async_session_local
    if _async_session_local is None:
        _async_session_local = async_sessionmaker(
            _get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _async_session_local


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting database sessions"""
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def unit_of_work(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Run a block of statements as one transaction on ``session``.

    Commits when the block exits normally, rolls back everything otherwise.
    Unique-constraint violations surface as ConflictError.
    """
    try:
        yield session
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise ConflictError(
            "Conflicting concurrent write", details={"reason": str(e.orig)}
        ) from e
    except BaseException:
        await session.rollback()
        raise


async def close_db() -> None:
    """Close database connections"""
    if _engine:
        await _engine.dispose()
