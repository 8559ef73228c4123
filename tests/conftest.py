"""Test fixtures for the sync core.

Provides:
- A file-backed SQLite database (aiosqlite) with the sync tables created
- A session factory matching the repositories' session_factory contract
- Settings with zero retry waits and temporary attachment directories
- A sample MappingConfig (Individual, Organization, Activity)
- In-memory Store A / Store B adapters wired to a built SyncService
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool

from src.crmsync.config import Settings
from src.crmsync.core.database import SyncBase
from src.crmsync.main import build_sync_service
from src.crmsync.sync import models  # noqa: F401
from src.crmsync.sync.memory import MemoryStore
from src.crmsync.sync.schemas import MappingConfig, Store
from tests.sync_factories import make_mapping_config


@pytest.fixture
def mapping_config() -> MappingConfig:
    return make_mapping_config()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with no retry back-off and per-test attachment directories."""
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}",
        REMOTE_MAX_RETRIES=3,
        REMOTE_RETRY_MIN_WAIT=0,
        REMOTE_RETRY_MAX_WAIT=0,
        SYNC_CHUNK_SIZE=2,
        ATTACHMENT_STORAGE_DIR=str(tmp_path / "attachments"),
        STORE_A_UPLOAD_DIR=str(tmp_path / "store_a_upload"),
    )


@pytest_asyncio.fixture
async def engine(settings):
    """SQLite engine with the sync tables created. One connection per session."""
    engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(SyncBase.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Async generator callable yielding sessions, like core.database.get_session."""

    async def factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return factory


@pytest.fixture
def store_a() -> MemoryStore:
    return MemoryStore(Store.A, id_start=1000)


@pytest.fixture
def store_b() -> MemoryStore:
    return MemoryStore(Store.B, id_start=5000)


@pytest.fixture
def service(store_a, store_b, mapping_config, settings, session_factory):
    """Fully wired sync service; both stores forward their events to the orchestrator."""
    return build_sync_service(
        store_a,
        store_b,
        config=mapping_config,
        settings=settings,
        session_factory=session_factory,
    )


@pytest.fixture
def orchestrator(service):
    return service.orchestrator


@pytest.fixture
def identity(service):
    return service.identity
