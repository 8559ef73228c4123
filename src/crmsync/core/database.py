"""Async SQLAlchemy engine and session factory for sync bookkeeping tables.

Provides:
- SyncBase: Declarative base for entity links, batch offsets and attachments
- get_engine(): Lazily created async engine singleton
- get_session(): Session factory used by the repositories
- init_db() / close_db(): Table creation and engine disposal
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.crmsync.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_pre_ping=True,
            echo=False,
        )
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────

sync_metadata = MetaData(
    naming_convention={
        "ix": "ix_%(column_0_label)s",
        "uq": "uq_%(table_name)s_%(column_0_name)s",
        "pk": "pk_%(table_name)s",
    }
)


class SyncBase(DeclarativeBase):
    """Base class for sync bookkeeping models."""

    metadata = sync_metadata


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the module engine."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create the sync tables if they don't exist."""
    # Models must be imported so their tables are registered on the metadata
    from src.crmsync.sync import models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SyncBase.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
