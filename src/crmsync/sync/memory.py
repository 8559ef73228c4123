"""In-memory store adapter.

MemoryStore keeps records in dicts and notifies subscribed listeners after
every write, the way a real store fires its change hooks. Wiring a
listener that forwards to SyncOrchestrator.handle_event reproduces the
re-entrant behaviour the recursion guard exists for. Used for local
development and by the test suite.
"""

from __future__ import annotations

import itertools
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.crmsync.sync.ports import StoreError, StorePort
from src.crmsync.sync.schemas import ChunkPage, Operation, Store, StoreRecord, SyncEvent
from src.crmsync.sync.transcoder import MULTI_VALUE_SEPARATOR, split_multi

logger = structlog.get_logger(__name__)

StoreListener = Callable[[SyncEvent], Awaitable[Any]]

# Fields linking a child record to its parent, per record type
DEFAULT_PARENT_KEYS: dict[str, tuple[str, ...]] = {
    "Relationship": ("contact_id_a", "contact_id_b"),
}


class MemoryStore(StorePort):
    """Dict-backed StorePort that emits SyncEvents on every write.

    Args:
        store: Which side of the sync this store plays.
        parent_keys: Per-type fields used by query_children; defaults to
            ``contact_id`` for types not listed.
        id_start: First generated id.
    """

    def __init__(
        self,
        store: Store,
        parent_keys: dict[str, tuple[str, ...]] | None = None,
        id_start: int = 1,
    ) -> None:
        self.store = store
        self._records: dict[str, dict[str, dict[str, Any]]] = {}
        self._parent_keys = {**DEFAULT_PARENT_KEYS, **(parent_keys or {})}
        self._ids = itertools.count(id_start)
        self._listeners: list[StoreListener] = []
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    # ── Listeners ──────────────────────────────────────────────────────────

    def subscribe(self, listener: StoreListener) -> None:
        self._listeners.append(listener)

    async def _emit(self, type: str, id: str, operation: Operation, fields: dict[str, Any]) -> None:
        record = self._records.get(type, {}).get(id, fields)
        event = SyncEvent(
            store=self.store,
            entity_type=type,
            entity_id=id,
            operation=operation,
            fields=dict(fields),
            subtype=record.get("contact_type"),
            subtypes=split_multi(record.get("contact_sub_type")),
        )
        for listener in list(self._listeners):
            await listener(event)

    # ── Seeding ────────────────────────────────────────────────────────────

    def seed(self, type: str, fields: dict[str, Any]) -> StoreRecord:
        """Insert a record without notifying listeners."""
        record_id = str(fields["id"]) if "id" in fields else str(next(self._ids))
        data = {k: v for k, v in fields.items() if k != "id"}
        self._records.setdefault(type, {})[record_id] = data
        return StoreRecord(id=record_id, type=type, fields=dict(data))

    def records(self, type: str) -> dict[str, dict[str, Any]]:
        return self._records.get(type, {})

    # ── StorePort ──────────────────────────────────────────────────────────

    async def get_by_id(self, type: str, id: str) -> StoreRecord | None:
        data = self._records.get(type, {}).get(str(id))
        if data is None:
            return None
        return StoreRecord(id=str(id), type=type, fields=dict(data))

    async def create(self, type: str, fields: dict[str, Any]) -> StoreRecord:
        self.calls.append(("create", type, dict(fields)))
        if "id" in fields:
            raise StoreError("create called with an id", response={"is_error": 1})
        record_id = str(next(self._ids))
        self._records.setdefault(type, {})[record_id] = dict(fields)
        logger.debug("memory_store.created", store=self.store.value, type=type, id=record_id)
        await self._emit(type, record_id, Operation.CREATE, fields)
        return StoreRecord(id=record_id, type=type, fields=dict(fields))

    async def update(self, type: str, fields: dict[str, Any]) -> StoreRecord:
        self.calls.append(("update", type, dict(fields)))
        record_id = str(fields.get("id") or "")
        existing = self._records.get(type, {}).get(record_id)
        if existing is None:
            raise StoreError(f"{type} {record_id!r} not found", response={"is_error": 1})
        changes = {k: v for k, v in fields.items() if k != "id"}
        existing.update(changes)
        await self._emit(type, record_id, Operation.EDIT, changes)
        return StoreRecord(id=record_id, type=type, fields=dict(existing))

    async def query_children(self, type: str, parent_id: str) -> list[StoreRecord]:
        keys = self._parent_keys.get(type, ("contact_id",))
        return [
            StoreRecord(id=record_id, type=type, fields=dict(data))
            for record_id, data in self._records.get(type, {}).items()
            if any(str(data.get(key)) == str(parent_id) for key in keys)
        ]

    async def delete(self, type: str, id: str) -> bool:
        self.calls.append(("delete", type, {"id": id}))
        data = self._records.get(type, {}).pop(str(id), None)
        if data is None:
            return False
        await self._emit(type, str(id), Operation.DELETE, data)
        return True

    async def query_chunk(
        self, type: str, filter: dict[str, Any], offset: int, limit: int
    ) -> ChunkPage:
        matching = [
            (record_id, data)
            for record_id, data in self._records.get(type, {}).items()
            if all(_matches(data.get(key), value) for key, value in filter.items())
        ]
        page = matching[offset : offset + limit]
        return ChunkPage(
            total=len(matching),
            items=[StoreRecord(id=record_id, type=type, fields=dict(data)) for record_id, data in page],
        )

    def writes(self, kind: str | None = None, type: str | None = None) -> list[tuple[str, str, dict[str, Any]]]:
        """Recorded create/update/delete calls, optionally filtered."""
        return [
            call
            for call in self.calls
            if (kind is None or call[0] == kind) and (type is None or call[1] == type)
        ]


def _matches(actual: Any, expected: Any) -> bool:
    if isinstance(actual, (list, tuple)) or (isinstance(actual, str) and MULTI_VALUE_SEPARATOR in actual):
        return str(expected) in split_multi(actual)
    return str(actual) == str(expected)
