"""Resumable batch sync over whole mapped types.

Provides:
- SyncOffsetRepository: persisted next offset per (mapped type, direction)
- BatchSyncRunner: drives SyncOrchestrator.sync_chunk() page by page and
  records progress so an interrupted batch resumes where it stopped

The offset row is written after every completed chunk and removed once the
last page has been processed. An aborted chunk leaves the stored offset
untouched so the same page is retried on the next step.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.crmsync.sync.context import SyncContext
from src.crmsync.sync.models import SyncOffsetModel
from src.crmsync.sync.orchestrator import SyncOrchestrator
from src.crmsync.sync.schemas import ChunkResult, Store

logger = structlog.get_logger(__name__)


# ── Repository ──────────────────────────────────────────────────────────────


class SyncOffsetRepository:
    """Async persistence for batch offsets.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def get(self, type_key: str, source: Store) -> int:
        """Stored offset, or 0 when no batch is in progress."""
        async for session in self._session_factory():
            stmt = select(SyncOffsetModel.offset).where(
                SyncOffsetModel.type_key == type_key,
                SyncOffsetModel.direction == source.value,
            )
            result = await session.execute(stmt)
            offset = result.scalar_one_or_none()
            return offset or 0
        return 0

    async def save(self, type_key: str, source: Store, offset: int) -> None:
        async for session in self._session_factory():
            stmt = select(SyncOffsetModel).where(
                SyncOffsetModel.type_key == type_key,
                SyncOffsetModel.direction == source.value,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                session.add(SyncOffsetModel(type_key=type_key, direction=source.value, offset=offset))
            else:
                model.offset = offset
            await session.commit()

    async def clear(self, type_key: str, source: Store) -> None:
        async for session in self._session_factory():
            await session.execute(
                delete(SyncOffsetModel).where(
                    SyncOffsetModel.type_key == type_key,
                    SyncOffsetModel.direction == source.value,
                )
            )
            await session.commit()


# ── Runner ──────────────────────────────────────────────────────────────────


class BatchSyncRunner:
    """Syncs every record of a mapped type, one chunk per step.

    Args:
        orchestrator: The orchestrator that processes each chunk.
        offsets: Offset persistence.
        chunk_size: Records per chunk. Defaults to the orchestrator's setting.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        offsets: SyncOffsetRepository,
        chunk_size: int | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._offsets = offsets
        self._chunk_size = chunk_size

    async def step(self, type_key: str, source: Store = Store.A) -> ChunkResult:
        """Process the next chunk and persist the offset after it."""
        offset = await self._offsets.get(type_key, source)
        result = await self._orchestrator.sync_chunk(
            type_key, offset, self._chunk_size, source=source, ctx=SyncContext()
        )
        if result.aborted:
            logger.warning("batch.chunk_aborted", type_key=type_key, source=source.value, offset=offset)
        elif result.done:
            await self._offsets.clear(type_key, source)
            logger.info("batch.complete", type_key=type_key, source=source.value, total=result.total)
        else:
            await self._offsets.save(type_key, source, result.next_offset)
        return result

    async def run(
        self, type_key: str, source: Store = Store.A, max_chunks: int | None = None
    ) -> list[ChunkResult]:
        """Run steps until the batch is done, a chunk aborts, or ``max_chunks`` is reached."""
        results: list[ChunkResult] = []
        while max_chunks is None or len(results) < max_chunks:
            result = await self.step(type_key, source)
            results.append(result)
            if result.done or result.aborted:
                break
        return results

    async def reset(self, type_key: str, source: Store = Store.A) -> None:
        """Forget the progress of a batch so the next step starts from the beginning."""
        await self._offsets.clear(type_key, source)
        logger.info("batch.reset", type_key=type_key, source=source.value)
