"""Entity identity map -- persisted 1:1 links between Store A and Store B records.

Provides:
- EntityLinkRepository: async CRUD on the entity_links table (session_factory
  callable pattern)
- IdentityMap: get/set/remove with the uniqueness guarantee and per-pass
  memoization through SyncContext.memo

A set() that would break the 1:1 relation is a ConfigurationError; links
are never silently overwritten.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable

import structlog
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.crmsync.core.exceptions import ConfigurationError
from src.crmsync.sync.context import SyncContext
from src.crmsync.sync.models import EntityLinkModel
from src.crmsync.sync.schemas import EntityLink, MappedType, Store

logger = structlog.get_logger(__name__)


def _model_to_link(model: EntityLinkModel) -> EntityLink:
    """Convert EntityLinkModel to EntityLink schema."""
    return EntityLink(mapped_type=model.mapped_type, a_id=model.a_id, b_id=model.b_id)


# ── Repository ──────────────────────────────────────────────────────────────


class EntityLinkRepository:
    """Async CRUD for entity links.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def get(self, mapped_type: str, store: Store, record_id: str) -> EntityLink | None:
        """Get the link whose ``store`` side is ``record_id``."""
        column = EntityLinkModel.a_id if store == Store.A else EntityLinkModel.b_id
        async for session in self._session_factory():
            stmt = select(EntityLinkModel).where(
                EntityLinkModel.mapped_type == mapped_type,
                column == record_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_link(model)

    async def find_conflicts(self, mapped_type: str, a_id: str, b_id: str) -> list[EntityLink]:
        """Links of the mapped type sharing either id."""
        async for session in self._session_factory():
            stmt = select(EntityLinkModel).where(
                EntityLinkModel.mapped_type == mapped_type,
                or_(EntityLinkModel.a_id == a_id, EntityLinkModel.b_id == b_id),
            )
            result = await session.execute(stmt)
            return [_model_to_link(m) for m in result.scalars().all()]
        return []

    async def create(self, link: EntityLink) -> EntityLink:
        """Insert a link. Raises IntegrityError on a uniqueness violation."""
        async for session in self._session_factory():
            model = EntityLinkModel(mapped_type=link.mapped_type, a_id=link.a_id, b_id=link.b_id)
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_link(model)

    async def delete(self, mapped_type: str, store: Store, record_id: str) -> EntityLink | None:
        """Delete the link whose ``store`` side is ``record_id``. Returns the removed link."""
        column = EntityLinkModel.a_id if store == Store.A else EntityLinkModel.b_id
        async for session in self._session_factory():
            stmt = select(EntityLinkModel).where(
                EntityLinkModel.mapped_type == mapped_type,
                column == record_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            link = _model_to_link(model)
            await session.execute(delete(EntityLinkModel).where(EntityLinkModel.id == model.id))
            await session.commit()
            return link

    async def list_for_type(self, mapped_type: str) -> list[EntityLink]:
        async for session in self._session_factory():
            stmt = (
                select(EntityLinkModel)
                .where(EntityLinkModel.mapped_type == mapped_type)
                .order_by(EntityLinkModel.id)
            )
            result = await session.execute(stmt)
            return [_model_to_link(m) for m in result.scalars().all()]
        return []


# ── Identity Map ────────────────────────────────────────────────────────────


class IdentityMap:
    """Looks up and records counterpart ids per mapped type.

    Lookups run once per field that needs mapped-type context, so results
    (including misses) are memoized in the pass context. set() and remove()
    keep the memo consistent.

    Args:
        repository: Persistence for entity links.
    """

    def __init__(self, repository: EntityLinkRepository) -> None:
        self._repository = repository

    async def get(
        self, mapped_type: MappedType, store: Store, record_id: str, ctx: SyncContext | None = None
    ) -> str | None:
        """Counterpart id of the ``store`` record ``record_id``, or None."""
        key = _memo_key(mapped_type, store, record_id)
        if ctx is not None and key in ctx.memo:
            return ctx.memo[key]

        link = await self._repository.get(mapped_type.key, store, str(record_id))
        counterpart = None
        if link is not None:
            counterpart = link.b_id if store == Store.A else link.a_id

        if ctx is not None:
            ctx.memo[key] = counterpart
        return counterpart

    async def set(
        self, mapped_type: MappedType, a_id: str, b_id: str, ctx: SyncContext | None = None
    ) -> EntityLink:
        """Store the link (a_id, b_id). Idempotent for an identical link.

        Raises:
            ConfigurationError: Either id is already linked to a different record.
        """
        a_id, b_id = str(a_id), str(b_id)
        conflicts = await self._repository.find_conflicts(mapped_type.key, a_id, b_id)
        for existing in conflicts:
            if existing.a_id == a_id and existing.b_id == b_id:
                self._remember(mapped_type, existing, ctx)
                return existing
        if conflicts:
            existing = conflicts[0]
            raise ConfigurationError(
                f"Link ({a_id}, {b_id}) conflicts with existing link "
                f"({existing.a_id}, {existing.b_id}) for {mapped_type.key}",
                operation="identity.set",
                params={"mapped_type": mapped_type.key, "a_id": a_id, "b_id": b_id},
            )

        try:
            link = await self._repository.create(
                EntityLink(mapped_type=mapped_type.key, a_id=a_id, b_id=b_id)
            )
        except IntegrityError as exc:
            raise ConfigurationError(
                f"Link ({a_id}, {b_id}) violates uniqueness for {mapped_type.key}",
                operation="identity.set",
                params={"mapped_type": mapped_type.key, "a_id": a_id, "b_id": b_id},
            ) from exc

        logger.info("identity.link_stored", mapped_type=mapped_type.key, a_id=a_id, b_id=b_id)
        self._remember(mapped_type, link, ctx)
        return link

    async def remove(
        self, mapped_type: MappedType, store: Store, record_id: str, ctx: SyncContext | None = None
    ) -> bool:
        """Remove the link of a record on either side. Returns True if one existed."""
        link = await self._repository.delete(mapped_type.key, store, str(record_id))
        if link is None:
            return False
        logger.info("identity.link_removed", mapped_type=mapped_type.key, a_id=link.a_id, b_id=link.b_id)
        if ctx is not None:
            ctx.memo[_memo_key(mapped_type, Store.A, link.a_id)] = None
            ctx.memo[_memo_key(mapped_type, Store.B, link.b_id)] = None
        return True

    async def find_contact(
        self, mapped_types: list[MappedType], a_id: str, ctx: SyncContext | None = None
    ) -> tuple[MappedType, str] | None:
        """Find the mapped type and Store B id a Store A contact is linked under."""
        for mapped_type in mapped_types:
            b_id = await self.get(mapped_type, Store.A, a_id, ctx)
            if b_id is not None:
                return mapped_type, b_id
        return None

    @staticmethod
    def _remember(mapped_type: MappedType, link: EntityLink, ctx: SyncContext | None) -> None:
        if ctx is None:
            return
        ctx.memo[_memo_key(mapped_type, Store.A, link.a_id)] = link.b_id
        ctx.memo[_memo_key(mapped_type, Store.B, link.b_id)] = link.a_id


def _memo_key(mapped_type: MappedType, store: Store, record_id: str) -> tuple[str, str, str, str]:
    return ("identity", mapped_type.key, store.value, str(record_id))
