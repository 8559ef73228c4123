"""Pydantic schemas for the sync core -- configuration, records, events, results.

Defines all structured types exchanged between the sync components:
- Enums: Store, SyncDirection, Operation, RelationshipDirection, FieldType,
  SubRecordFamily, OutcomeStatus, FlagAction
- Field kinds: NativeField, CustomField, RelationshipField, SubRecordField
  (tagged union FieldKind, discriminated on ``kind``)
- Configuration: MappedType, FieldMapping, CustomFieldDefinition, MappingConfig
- Records: EntityLink, RelationshipRecord, LinkedSubRecord, StoreRecord, ChunkPage
- Pipeline: SyncEvent, SyncNotification, SyncOutcome, ChunkResult
- Reconciliation plans: RelationshipPlan, IdPlan, FlagTransition, PrimaryPlan

Record ids are always carried as strings; stores that use integer ids are
coerced on validation.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator

RecordId = Annotated[str, BeforeValidator(lambda v: str(v) if isinstance(v, int) else v)]


# ── Enums ───────────────────────────────────────────────────────────────────


class Store(str, Enum):
    """The two record stores kept in sync."""

    A = "a"
    B = "b"

    @property
    def other(self) -> Store:
        return Store.B if self is Store.A else Store.A


class SyncDirection(str, Enum):
    """Which way a field mapping is allowed to flow."""

    BOTH = "both"
    A_TO_B = "a_to_b"  # derived in Store A, read-only in Store B
    B_TO_A = "b_to_a"


class Operation(str, Enum):
    """Kind of change carried by an inbound event."""

    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"


class RelationshipDirection(str, Enum):
    """Which side of a relationship the syncing contact sits on."""

    AB = "ab"
    BA = "ba"

    @property
    def reverse(self) -> RelationshipDirection:
        return RelationshipDirection.BA if self is RelationshipDirection.AB else RelationshipDirection.AB


class FieldType(str, Enum):
    """Store B field types understood by the transcoder."""

    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    EMAIL = "email"
    URL = "url"
    SELECT = "select"
    CHECKBOX = "checkbox"
    RADIO = "radio"
    TRUE_FALSE = "true_false"
    DATE_PICKER = "date_picker"
    DATE_TIME_PICKER = "date_time_picker"
    IMAGE = "image"
    FILE = "file"
    RELATIONSHIP = "relationship"
    REPEATER = "repeater"


class SubRecordFamily(str, Enum):
    """Families of multi-valued dependent records attached to a contact."""

    IM = "im"
    PHONE = "phone"
    EMAIL = "email"
    ADDRESS = "address"
    WEBSITE = "website"


class OutcomeStatus(str, Enum):
    """Result of processing one record."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    SKIPPED = "skipped"
    FAILED = "failed"


class FlagAction(str, Enum):
    """Transition of a singleton boolean flag."""

    NOOP = "noop"
    SET = "set"
    CLEAR = "clear"


# ── Field Kinds ─────────────────────────────────────────────────────────────


class NativeField(BaseModel):
    """A native Store A field addressed by its code."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["native"] = "native"
    code: str


class CustomField(BaseModel):
    """A dynamically attached Store A custom field."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["custom"] = "custom"
    field_id: int

    @property
    def code(self) -> str:
        return f"custom_{self.field_id}"


class RelationshipField(BaseModel):
    """A typed, directional relationship mirrored as a list of contact ids."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["relationship"] = "relationship"
    type_id: int
    direction: RelationshipDirection

    @property
    def code(self) -> str:
        return f"{self.type_id}_{self.direction.value}"


class SubRecordField(BaseModel):
    """A family of dependent records mirrored as a repeater of rows."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["sub_record"] = "sub_record"
    family: SubRecordFamily

    @property
    def code(self) -> str:
        return self.family.value


FieldKind = Annotated[
    Union[NativeField, CustomField, RelationshipField, SubRecordField],
    Field(discriminator="kind"),
]


# ── Configuration ───────────────────────────────────────────────────────────


class MappedType(BaseModel):
    """Declared correspondence between one Store A type and one Store B type.

    Attributes:
        a_entity: Store A entity used for API calls (Contact, Activity, Participant).
        a_type: Top-level Store A type (Individual, Organization, Household,
            Activity, Participant). Selects the native field allow-list.
        a_subtype: Optional Store A sub type (e.g. a contact sub type).
        b_type: Store B record type.
        allow_create: Whether a missing counterpart may be created on demand.
        a_defaults: Extra fields sent when creating the Store A record.
    """

    model_config = ConfigDict(frozen=True)

    a_entity: str = "Contact"
    a_type: str
    a_subtype: str | None = None
    b_type: str
    allow_create: bool = True
    a_defaults: tuple[tuple[str, Any], ...] = ()

    @property
    def key(self) -> str:
        a_part = f"{self.a_type}/{self.a_subtype}" if self.a_subtype else self.a_type
        return f"{a_part}:{self.b_type}"

    @property
    def is_contact(self) -> bool:
        return self.a_entity == "Contact"

    def create_defaults(self) -> dict[str, Any]:
        """Fields that identify the Store A type on create."""
        defaults: dict[str, Any] = dict(self.a_defaults)
        if self.is_contact:
            defaults.setdefault("contact_type", self.a_type)
            if self.a_subtype:
                defaults.setdefault("contact_sub_type", self.a_subtype)
        return defaults


class FieldMapping(BaseModel):
    """Binding of a Store B field selector to a Store A field kind."""

    model_config = ConfigDict(frozen=True)

    selector: str
    target: FieldKind
    field_type: FieldType = FieldType.TEXT
    direction: SyncDirection = SyncDirection.BOTH
    settings: dict[str, Any] = Field(default_factory=dict)

    def __hash__(self) -> int:
        return hash((self.selector, self.target))

    @property
    def multiple(self) -> bool:
        return self.field_type == FieldType.CHECKBOX or bool(self.settings.get("multiple"))


class CustomFieldDefinition(BaseModel):
    """A Store A custom field and the types it is attached to."""

    field_id: int
    label: str = ""
    data_type: str = "String"
    html_type: str = "Text"
    extends: list[str] = Field(default_factory=list)
    extends_subtypes: list[str] = Field(default_factory=list)

    def applies_to(self, mapped_type: MappedType) -> bool:
        """Return True if this custom field is attached to the mapped type's records."""
        # "Contact" extends every contact type
        if mapped_type.a_type not in self.extends and mapped_type.a_entity not in self.extends:
            return False
        if self.extends_subtypes:
            return mapped_type.a_subtype in self.extends_subtypes
        return True


class MappingConfig(BaseModel):
    """Static sync configuration, read-only to the core.

    Attributes:
        mapped_types: Declared type correspondences.
        fields: Field mappings keyed by MappedType.key.
        custom_fields: Store A custom field definitions.
    """

    mapped_types: list[MappedType] = Field(default_factory=list)
    fields: dict[str, list[FieldMapping]] = Field(default_factory=dict)
    custom_fields: list[CustomFieldDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_unique_types(self) -> MappingConfig:
        seen_a: set[tuple[str, str | None]] = set()
        seen_b: set[str] = set()
        for mapped in self.mapped_types:
            a_key = (mapped.a_type, mapped.a_subtype)
            if a_key in seen_a:
                raise ValueError(f"Store A type {mapped.a_type!r} is mapped more than once")
            if mapped.b_type in seen_b:
                raise ValueError(f"Store B type {mapped.b_type!r} is mapped more than once")
            seen_a.add(a_key)
            seen_b.add(mapped.b_type)
        return self

    def mapped_type_by_key(self, key: str) -> MappedType | None:
        return next((m for m in self.mapped_types if m.key == key), None)

    def mapped_type_for_b(self, b_type: str) -> MappedType | None:
        return next((m for m in self.mapped_types if m.b_type == b_type), None)

    def mapped_type_for_a(
        self, a_entity: str, a_type: str | None = None, subtypes: list[str] | tuple[str, ...] = ()
    ) -> MappedType | None:
        """Find the mapped type for a Store A record, most specific match first."""
        candidates = [m for m in self.mapped_types if m.a_entity == a_entity]
        if a_type is not None:
            candidates = [m for m in candidates if m.a_type == a_type]
        for mapped in candidates:
            if mapped.a_subtype and mapped.a_subtype in subtypes:
                return mapped
        return next((m for m in candidates if m.a_subtype is None), None)

    def contact_types(self) -> list[MappedType]:
        return [m for m in self.mapped_types if m.is_contact]

    def fields_for(self, mapped_type: MappedType) -> list[FieldMapping]:
        return self.fields.get(mapped_type.key, [])


# ── Records ─────────────────────────────────────────────────────────────────


class EntityLink(BaseModel):
    """Persisted 1:1 link between a Store A record and a Store B record."""

    mapped_type: str
    a_id: RecordId
    b_id: RecordId


class StoreRecord(BaseModel):
    """Generic record returned by a store adapter."""

    id: RecordId
    type: str
    fields: dict[str, Any] = Field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)


class ChunkPage(BaseModel):
    """One page of a paginated store query."""

    total: int
    items: list[StoreRecord] = Field(default_factory=list)


class RelationshipRecord(BaseModel):
    """Typed, directional link between two Store A contacts."""

    id: RecordId | None = None
    contact_id_a: RecordId
    contact_id_b: RecordId
    type_id: int
    is_active: bool = True

    def source(self, direction: RelationshipDirection) -> str:
        return self.contact_id_a if direction == RelationshipDirection.AB else self.contact_id_b

    def target(self, direction: RelationshipDirection) -> str:
        return self.contact_id_b if direction == RelationshipDirection.AB else self.contact_id_a

    def pair(self, direction: RelationshipDirection) -> tuple[str, str]:
        return (self.source(direction), self.target(direction))

    @classmethod
    def from_store(cls, record: StoreRecord) -> RelationshipRecord:
        return cls(
            id=record.id,
            contact_id_a=record.fields["contact_id_a"],
            contact_id_b=record.fields["contact_id_b"],
            type_id=int(record.fields["relationship_type_id"]),
            is_active=truthy(record.fields.get("is_active", True)),
        )


class LinkedSubRecord(BaseModel):
    """Multi-valued dependent record attached to a parent Store A entity.

    ``row_index`` is the position of the row in the Store B repeater the
    record came from; it is used to write generated ids back.
    """

    id: RecordId | None = None
    parent_id: RecordId | None = None
    family: SubRecordFamily
    fields: dict[str, Any] = Field(default_factory=dict)
    location_type_id: int | None = None
    is_primary: bool = False
    is_billing: bool = False
    master_id: RecordId | None = None
    row_index: int | None = None

    def comparable(self) -> dict[str, Any]:
        """Values compared when deciding whether a record changed."""
        values = {k: _normalize(v) for k, v in self.fields.items()}
        values["location_type_id"] = _normalize(self.location_type_id)
        values["is_primary"] = self.is_primary
        values["is_billing"] = self.is_billing
        return values


# ── Pipeline ────────────────────────────────────────────────────────────────


class SyncEvent(BaseModel):
    """An inbound change from either store.

    Attributes:
        store: The store the change happened in.
        entity_type: Store A entity or Store B record type. May be None for
            hooks that only know the raw id.
        entity_id: Id of the changed record (None only for pre-create hooks).
        operation: create, edit or delete.
        fields: Changed field values keyed by Store A code or Store B selector.
        previous: Values before the change, same keys as ``fields``.
        subtype: Store A top-level type (e.g. contact type) when known.
        subtypes: Store A sub types of the record.
        sync_disabled: The record is flagged not to be synced.
        include_related: Also sync relationships and sub-record families.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    store: Store
    entity_type: str | None = None
    entity_id: RecordId | None = None
    operation: Operation = Operation.EDIT
    fields: dict[str, Any] = Field(default_factory=dict)
    previous: dict[str, Any] = Field(default_factory=dict)
    subtype: str | None = None
    subtypes: list[str] = Field(default_factory=list)
    sync_disabled: bool = False
    include_related: bool = False


class SyncNotification(BaseModel):
    """Local broadcast fired after a record is synced or a field is unlinked."""

    name: str
    mapped_type: str | None = None
    store: Store | None = None
    before_id: RecordId | None = None
    after_id: RecordId | None = None
    source_id: RecordId | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class SyncOutcome(BaseModel):
    """Result of processing one inbound event."""

    status: OutcomeStatus
    store: Store
    mapped_type: str | None = None
    source_id: RecordId | None = None
    target_id: RecordId | None = None
    applied_fields: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != OutcomeStatus.FAILED


class ChunkResult(BaseModel):
    """Summary of one batch chunk."""

    count: int = 0
    applied: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0
    offset: int = 0
    next_offset: int = 0
    done: bool = False
    aborted: bool = False
    errors: list[str] = Field(default_factory=list)


# ── Reconciliation Plans ───────────────────────────────────────────────────


class RelationshipPlan(BaseModel):
    """Disjoint action buckets for relationship-style records."""

    ignore: list[RelationshipRecord] = Field(default_factory=list)
    activate: list[RelationshipRecord] = Field(default_factory=list)
    deactivate: list[RelationshipRecord] = Field(default_factory=list)
    create: list[RecordId] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.activate or self.deactivate or self.create)


class IdPlan(BaseModel):
    """Create/update/ignore/delete buckets for records keyed by their own id."""

    create: list[LinkedSubRecord] = Field(default_factory=list)
    update: list[LinkedSubRecord] = Field(default_factory=list)
    ignore: list[LinkedSubRecord] = Field(default_factory=list)
    delete: list[LinkedSubRecord] = Field(default_factory=list)
    stale_ids: list[RecordId] = Field(default_factory=list)


class FlagTransition(BaseModel):
    """Flag change for one record of a family."""

    record_id: RecordId | None = None
    row_index: int | None = None
    action: FlagAction


class PrimaryPlan(BaseModel):
    """Consistent flag transitions for a whole family of sub-records."""

    flag: str
    winner: LinkedSubRecord | None = None
    transitions: list[FlagTransition] = Field(default_factory=list)
    records: list[LinkedSubRecord] = Field(default_factory=list)


# ── Helpers ─────────────────────────────────────────────────────────────────


def truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false", "null")
    return bool(value)


def _normalize(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    return value
