"""Database engine and session utilities for async SQLAlchemy.

This module centralizes engine/session creation so that all components share a
single, lazily initialized async engine. It also handles common URL quirks
(e.g., ``postgres://`` vs ``postgresql://``) and provides a simple
``asynccontextmanager`` for sessions.

How to use:
- Use ``get_session()`` as an async context manager for DB work:

    Example:
        >>> from ticketbridge.db import get_session
        >>> async with get_session() as session:
        ...     await session.execute(text("SELECT 1"))
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # type: ignore

from ticketbridge.config import Settings


_engine: Any = None
_session_factory: Any = None


def normalize_database_url(db_url: str) -> str:
    """Rewrite ``postgres://`` and ``postgresql://`` URLs for the asyncpg driver.

    Example:
        >>> normalize_database_url("postgres://u:p@db/bridge")
        'postgresql+asyncpg://u:p@db/bridge'
    """
    if db_url.startswith("postgresql+asyncpg://"):
        return db_url
    if db_url.startswith("postgresql://"):
        return db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if db_url.startswith("postgres://"):
        return db_url.replace("postgres://", "postgresql+asyncpg://", 1)
    return db_url


def get_engine() -> Any:
    """Return a process-wide async SQLAlchemy engine, creating it if needed."""
    global _engine, _session_factory
    if _engine is None:
        settings = Settings()
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is not configured")
        _engine = create_async_engine(normalize_database_url(settings.database_url), pool_pre_ping=True)
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


@asynccontextmanager
async def get_session() -> AsyncIterator[Any]:
    """Yield an async SQLAlchemy session bound to the shared engine."""
    global _session_factory
    if _session_factory is None:
        get_engine()
    assert _session_factory is not None
    async with _session_factory() as session:
        yield session


async def create_tables() -> None:
    """Create missing tables; used by the worker on startup."""
    from ticketbridge.orm_models import Base

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
