"""Local change broadcaster.

The orchestrator and transcoder fire SyncNotifications here after a record
is synced (``record.synced``) or a custom field is cleared
(``custom_field.unlinked``). Listeners are registered explicitly at startup
and called in registration order within the same pass.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.crmsync.sync.schemas import SyncNotification

logger = structlog.get_logger(__name__)

RECORD_SYNCED = "record.synced"
CUSTOM_FIELD_UNLINKED = "custom_field.unlinked"

Listener = Callable[[SyncNotification], Awaitable[Any]]


class ChangeNotifier:
    """In-process broadcaster of sync notifications."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def subscribe(self, name: str, listener: Listener) -> None:
        self._listeners.setdefault(name, []).append(listener)

    def listeners(self, name: str) -> list[Listener]:
        return list(self._listeners.get(name, []))

    async def notify(self, notification: SyncNotification) -> int:
        """Call every listener of the notification name. Returns the number called."""
        listeners = self.listeners(notification.name)
        logger.debug(
            "notifier.broadcast",
            name=notification.name,
            mapped_type=notification.mapped_type,
            listeners=len(listeners),
        )
        for listener in listeners:
            await listener(notification)
        return len(listeners)
