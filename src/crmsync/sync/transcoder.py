"""Value transcoding between Store A's native representation and Store B fields.

Defines:
- MULTI_VALUE_SEPARATOR, split_multi(), join_multi(): Store A's private
  separator for multi-value option lists, stored padded ("\\x01a\\x01b\\x01").
- parse_date(): multi-format date parsing for both stores' encodings.
- OMIT: sentinel returned when a field must be left out of the payload.
- TranscodeContext: per-field context (pass, mapped type, ids, operation,
  previous value).
- ValueTranscoder: to_store_a() / to_store_b().

Store A reads dates as YYYY-MM-DD on edit and YYYYMMDDHHMMSS on create;
Store B stores date pickers as Ymd and date-time pickers as Y-m-d H:i:s.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from src.crmsync.core.exceptions import TranscodeFailure
from src.crmsync.sync.attachments import AttachmentService
from src.crmsync.sync.context import SyncContext
from src.crmsync.sync.mirror import as_id_list
from src.crmsync.sync.notifier import CUSTOM_FIELD_UNLINKED, ChangeNotifier
from src.crmsync.sync.registry import FieldMappingRegistry
from src.crmsync.sync.schemas import (
    CustomField,
    FieldMapping,
    FieldType,
    MappedType,
    Operation,
    Store,
    SyncNotification,
    truthy,
)

logger = structlog.get_logger(__name__)

MULTI_VALUE_SEPARATOR = "\x01"

# Encodings Store A may emit for a date or date-time value
STORE_A_DATE_FORMATS: tuple[str, ...] = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%Y%m%d%H%M%S",
    "%Y%m%d",
)

# Encodings a Store B date field may hold, after "/" has been read as "-"
STORE_B_DATE_FORMATS: tuple[str, ...] = (
    "%Y%m%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%d-%m-%Y %H:%M:%S",
    "%d-%m-%Y",
    "%Y%m%d%H%M%S",
)

STORE_B_DATE = "%Y%m%d"
STORE_B_DATE_TIME = "%Y-%m-%d %H:%M:%S"
STORE_A_DATE_EDIT = "%Y-%m-%d"
STORE_A_DATE_TIME_EDIT = "%Y-%m-%d %H:%M:%S"
STORE_A_DATE_CREATE = "%Y%m%d"
STORE_A_DATE_TIME_CREATE = "%Y%m%d%H%M%S"

_DATE_TYPES = (FieldType.DATE_PICKER, FieldType.DATE_TIME_PICKER)
_FILE_TYPES = (FieldType.IMAGE, FieldType.FILE)
_OPTION_TYPES = (FieldType.SELECT, FieldType.CHECKBOX, FieldType.RADIO)


class _Omit:
    """Marker for a field that must not be sent at all."""

    _instance: _Omit | None = None

    def __new__(cls) -> _Omit:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "OMIT"

    def __bool__(self) -> bool:
        return False


OMIT = _Omit()


# ── Helpers ─────────────────────────────────────────────────────────────────


def split_multi(value: Any) -> list[str]:
    """Split a Store A multi-value string (or pass a list through)."""
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value if v not in (None, "")]
    if isinstance(value, dict):
        # Checkbox values are sometimes keyed by option with truthy flags
        return [str(k) for k, v in value.items() if truthy(v)]
    text = str(value)
    if MULTI_VALUE_SEPARATOR not in text:
        return [text]
    return [part for part in text.strip(MULTI_VALUE_SEPARATOR).split(MULTI_VALUE_SEPARATOR) if part != ""]


def join_multi(values: Iterable[Any]) -> str:
    """Join values into Store A's padded multi-value string."""
    parts = [str(v) for v in values if v not in (None, "")]
    if not parts:
        return ""
    return MULTI_VALUE_SEPARATOR + MULTI_VALUE_SEPARATOR.join(parts) + MULTI_VALUE_SEPARATOR


def parse_date(value: Any, formats: Iterable[str]) -> datetime | None:
    """Parse ``value`` with the first matching format. Empty values give None.

    Raises ValueError when no format matches.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    for fmt in formats:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return datetime.fromisoformat(text)


def is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


@dataclass
class TranscodeContext:
    """Context for transcoding one field value.

    Attributes:
        ctx: The running sync pass.
        mapped_type: Mapped type of the record being synced.
        operation: CREATE when the target record does not exist yet.
        a_id: Store A record id, if known.
        b_id: Store B record id, if known.
        previous: The target store's value before this sync.
    """

    ctx: SyncContext
    mapped_type: MappedType
    operation: Operation = Operation.EDIT
    a_id: str | None = None
    b_id: str | None = None
    previous: Any = None


# ── Transcoder ──────────────────────────────────────────────────────────────


class ValueTranscoder:
    """Converts single field values between Store A and Store B.

    Args:
        registry: Field mapping registry (never-empty codes, payload renames).
        attachments: Attachment service for image and file fields.
        notifier: Broadcaster for synthetic unlink notifications.
    """

    def __init__(
        self,
        registry: FieldMappingRegistry,
        attachments: AttachmentService | None = None,
        notifier: ChangeNotifier | None = None,
    ) -> None:
        self._registry = registry
        self._attachments = attachments
        self._notifier = notifier

    # ── Store A -> Store B ─────────────────────────────────────────────────

    async def to_store_b(self, value: Any, mapping: FieldMapping, tctx: TranscodeContext) -> Any:
        """Convert a Store A value into the mapping's Store B field representation."""
        if value == "null":
            value = ""
        field_type = mapping.field_type

        if field_type in _DATE_TYPES:
            try:
                parsed = parse_date(value, STORE_A_DATE_FORMATS)
            except ValueError as exc:
                raise TranscodeFailure(mapping.selector, f"unparsable date {value!r}") from exc
            if parsed is None:
                return ""
            return parsed.strftime(STORE_B_DATE if field_type == FieldType.DATE_PICKER else STORE_B_DATE_TIME)

        if field_type == FieldType.TRUE_FALSE:
            return truthy(value)

        if field_type in _FILE_TYPES:
            return await self._import_file(value, mapping, tctx)

        if field_type == FieldType.RELATIONSHIP:
            return as_id_list(value)

        if field_type in _OPTION_TYPES or (isinstance(value, str) and MULTI_VALUE_SEPARATOR in value):
            values = split_multi(value)
            if mapping.multiple:
                return values
            return values[0] if values else ""

        if value is None:
            return ""
        return value

    async def _import_file(self, value: Any, mapping: FieldMapping, tctx: TranscodeContext) -> str | None:
        if is_empty(value):
            return None
        if self._attachments is None:
            raise TranscodeFailure(mapping.selector, "no attachment service configured")
        reference = value.get("name") or value.get("uri") if isinstance(value, dict) else str(value)
        previous = str(tctx.previous) if tctx.previous not in (None, "") else None
        return await self._attachments.import_reference(reference or "", previous)

    # ── Store B -> Store A ─────────────────────────────────────────────────

    async def to_store_a(self, value: Any, mapping: FieldMapping, tctx: TranscodeContext) -> Any:
        """Convert a Store B field value into Store A's representation.

        Returns OMIT when the field must be left out of the payload: the
        value is empty for a never-empty field, or a file is unchanged.
        """
        field_type = mapping.field_type
        result: Any

        if field_type in _DATE_TYPES:
            result = self._date_to_store_a(value, mapping, tctx)
        elif field_type == FieldType.TRUE_FALSE:
            result = "1" if truthy(value) else "0"
        elif field_type in _FILE_TYPES:
            result = await self._export_file(value, mapping, tctx)
        elif isinstance(value, (list, tuple, set)):
            values = [str(v) for v in value if v not in (None, "")]
            result = join_multi(values) if isinstance(mapping.target, CustomField) else values
        elif value is None:
            result = ""
        else:
            result = value

        if result is not OMIT and is_empty(result) and self._registry.is_never_empty(mapping.target.code):
            logger.debug(
                "transcoder.omit_empty",
                selector=mapping.selector,
                code=mapping.target.code,
            )
            return OMIT
        return result

    def _date_to_store_a(self, value: Any, mapping: FieldMapping, tctx: TranscodeContext) -> str:
        text = value
        if isinstance(value, str) and "/" in value:
            # d/m/Y return formats are read with dashes
            text = value.replace("/", "-")
        try:
            parsed = parse_date(text, STORE_B_DATE_FORMATS)
        except ValueError as exc:
            raise TranscodeFailure(mapping.selector, f"unparsable date {value!r}") from exc
        if parsed is None:
            return ""
        with_time = mapping.field_type == FieldType.DATE_TIME_PICKER
        if tctx.operation == Operation.CREATE:
            return parsed.strftime(STORE_A_DATE_TIME_CREATE if with_time else STORE_A_DATE_CREATE)
        return parsed.strftime(STORE_A_DATE_TIME_EDIT if with_time else STORE_A_DATE_EDIT)

    async def _export_file(self, value: Any, mapping: FieldMapping, tctx: TranscodeContext) -> Any:
        previous = str(tctx.previous) if tctx.previous not in (None, "") else None

        if is_empty(value):
            if previous is None:
                return ""
            if self._attachments is not None:
                await self._attachments.unlink(previous)
            await self._notify_unlinked(mapping, tctx, previous)
            return ""

        if self._attachments is None:
            raise TranscodeFailure(mapping.selector, "no attachment service configured")
        exported = await self._attachments.export(str(value), previous)
        if exported is None:
            return OMIT
        if isinstance(mapping.target, CustomField):
            return exported
        return exported["name"]

    async def _notify_unlinked(self, mapping: FieldMapping, tctx: TranscodeContext, previous: str) -> None:
        if self._notifier is None:
            return
        await self._notifier.notify(
            SyncNotification(
                name=CUSTOM_FIELD_UNLINKED,
                mapped_type=tctx.mapped_type.key,
                store=Store.B,
                before_id=previous,
                after_id=None,
                source_id=tctx.b_id,
                data={"selector": mapping.selector, "code": mapping.target.code, "a_id": tctx.a_id},
            )
        )
