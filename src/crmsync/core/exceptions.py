"""Sync error taxonomy.

- SyncError: Base class for everything the sync core raises
- ConfigurationError: Invalid request or configuration, fatal to one operation
- RemoteError: A store reported failure (or could not be reached)
- MappingMiss: A selector does not resolve to any field code
- TranscodeFailure: A value cannot be converted between stores

The orchestrator converts every failure into one of these kinds and never
lets them cross its boundary.
"""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base class for sync core errors."""


class ConfigurationError(SyncError):
    """Invalid operation or configuration (e.g. update without an id).

    Fatal to the single operation being processed.
    """

    def __init__(self, message: str, *, operation: str = "", params: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.params = params or {}


class RemoteError(SyncError):
    """A store API call failed.

    Carries the operation name, the parameters sent and whatever response
    the store returned so the failure can be logged with full context.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str = "",
        params: dict[str, Any] | None = None,
        response: Any = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.params = params or {}
        self.response = response


class MappingMiss(SyncError):
    """Selector cannot be resolved to a field code for the mapped type."""

    def __init__(self, selector: str, mapped_type: str) -> None:
        super().__init__(f"No field mapping for {selector!r} on {mapped_type}")
        self.selector = selector
        self.mapped_type = mapped_type


class TranscodeFailure(SyncError):
    """A value could not be converted; the field is omitted from the payload."""

    def __init__(self, selector: str, reason: str) -> None:
        super().__init__(f"Cannot transcode {selector!r}: {reason}")
        self.selector = selector
        self.reason = reason
