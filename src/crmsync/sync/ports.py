"""Store port abstract base class -- the only interface the sync core calls.

Every store backend (CRM REST API, content store, in-memory) implements this
ABC. The orchestrator never issues raw protocol calls; transports live
entirely behind this boundary.

Adapters signal failures with StoreError (permanent) or TransientStoreError
(retried by the orchestrator before being reported as RemoteError).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from src.crmsync.sync.schemas import ChunkPage, StoreRecord


class StoreError(Exception):
    """A store rejected a call.

    Args:
        message: Human readable failure.
        response: Raw response payload from the store, when available.
    """

    def __init__(self, message: str, response: Any = None) -> None:
        super().__init__(message)
        self.response = response


class TransientStoreError(StoreError):
    """A store call failed in a way that is worth retrying (timeouts, 5xx)."""


class StorePort(ABC):
    """Abstract interface for record store operations.

    Methods:
        get_by_id: Fetch one record, None when not found.
        create: Create a record. ``fields`` never includes an id.
        update: Update a record. ``fields`` always includes the id.
        query_children: Records of ``type`` attached to a parent record.
        delete: Delete a record, True if something was deleted.
        query_chunk: One offset/limit page with a stable total.
    """

    @abstractmethod
    async def get_by_id(self, type: str, id: str) -> StoreRecord | None:
        """Fetch one record by id."""
        ...

    @abstractmethod
    async def create(self, type: str, fields: dict[str, Any]) -> StoreRecord:
        """Create a record from fields without an id."""
        ...

    @abstractmethod
    async def update(self, type: str, fields: dict[str, Any]) -> StoreRecord:
        """Update the record identified by ``fields["id"]``."""
        ...

    @abstractmethod
    async def query_children(self, type: str, parent_id: str) -> list[StoreRecord]:
        """List records of ``type`` attached to ``parent_id``."""
        ...

    @abstractmethod
    async def delete(self, type: str, id: str) -> bool:
        """Delete a record by id."""
        ...

    @abstractmethod
    async def query_chunk(
        self, type: str, filter: dict[str, Any], offset: int, limit: int
    ) -> ChunkPage:
        """Fetch one page of records matching ``filter``."""
        ...
