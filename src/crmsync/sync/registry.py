"""Field mapping registry -- resolves Store B selectors and Store A codes.

Defines:
- Native field allow-lists per top-level Store A type (CONTACT_COMMON_FIELDS,
  INDIVIDUAL_FIELDS, ORGANIZATION_FIELDS, HOUSEHOLD_FIELDS, ACTIVITY_FIELDS,
  PARTICIPANT_FIELDS).
- PAYLOAD_RENAMES: native codes written under a different key on create/update.
- NEVER_EMPTY_FIELDS: codes that must never be sent empty.
- FieldMappingRegistry: resolve(), require(), resolve_code(), selectors_for().

A native code and a custom code can collide as raw strings, so field kinds
are resolved once here (custom membership first, then the native allow-list)
and carried downstream as tagged FieldKind values.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog

from src.crmsync.core.exceptions import MappingMiss
from src.crmsync.sync.context import SyncContext
from src.crmsync.sync.schemas import (
    CustomField,
    CustomFieldDefinition,
    FieldMapping,
    MappedType,
    MappingConfig,
    NativeField,
    RelationshipDirection,
    RelationshipField,
    SubRecordField,
    SubRecordFamily,
    SyncDirection,
)

logger = structlog.get_logger(__name__)


# ── Native Field Allow-lists ───────────────────────────────────────────────

CONTACT_COMMON_FIELDS: frozenset[str] = frozenset({
    "nick_name",
    "image_URL",
    "source",
    "do_not_email",
    "do_not_phone",
    "do_not_mail",
    "do_not_sms",
    "do_not_trade",
    "is_opt_out",
    "preferred_communication_method",
    "preferred_language",
    "preferred_mail_format",
    "legal_identifier",
    "external_identifier",
    "communication_style_id",
})

INDIVIDUAL_FIELDS: frozenset[str] = frozenset({
    "prefix_id",
    "first_name",
    "last_name",
    "middle_name",
    "suffix_id",
    "job_title",
    "gender_id",
    "birth_date",
    "is_deceased",
    "deceased_date",
    "employer_id",
    "formal_title",
})

ORGANIZATION_FIELDS: frozenset[str] = frozenset({
    "legal_name",
    "organization_name",
    "sic_code",
})

HOUSEHOLD_FIELDS: frozenset[str] = frozenset({
    "household_name",
})

ACTIVITY_FIELDS: frozenset[str] = frozenset({
    "subject",
    "details",
    "created_date",
    "modified_date",
    "activity_date_time",
    "status_id",
    "priority_id",
    "engagement_level",
    "duration",
    "location",
    "source_contact_id",
    "target_contact_id",
    "assignee_contact_id",
})

PARTICIPANT_FIELDS: frozenset[str] = frozenset({
    "event_id",
    "contact_id",
    "status_id",
    "role_id",
    "register_date",
    "source",
    "fee_level",
    "fee_amount",
    "is_test",
    "is_pay_later",
    "must_wait",
})

NATIVE_FIELDS: dict[str, frozenset[str]] = {
    "Individual": CONTACT_COMMON_FIELDS | INDIVIDUAL_FIELDS,
    "Organization": CONTACT_COMMON_FIELDS | ORGANIZATION_FIELDS,
    "Household": CONTACT_COMMON_FIELDS | HOUSEHOLD_FIELDS,
    "Activity": ACTIVITY_FIELDS,
    "Participant": PARTICIPANT_FIELDS,
}

# The API reads and writes these under a different key than their display code
PAYLOAD_RENAMES: dict[str, str] = {
    "target_contact_id": "target_id",
    "assignee_contact_id": "assignee_id",
}

NEVER_EMPTY_FIELDS: frozenset[str] = frozenset({
    "source_contact_id",
    "activity_date_time",
    "created_date",
    "modified_date",
})

_CUSTOM_CODE = re.compile(r"^custom_(\d+)$")
_RELATIONSHIP_CODE = re.compile(r"^(\d+)_(ab|ba)$")


@dataclass(frozen=True)
class ResolvedField:
    """A Store B selector resolved against a mapped type."""

    mapping: FieldMapping
    payload_code: str

    @property
    def kind(self):
        return self.mapping.target

    @property
    def selector(self) -> str:
        return self.mapping.selector


class FieldMappingRegistry:
    """Resolves field selectors to Store A field kinds for a MappedType.

    Pure over the static MappingConfig. Lookups that scan configuration are
    memoized in the pass context (keyed by mapped type and field kind) when
    one is supplied.

    Args:
        config: The static mapping configuration.
    """

    def __init__(self, config: MappingConfig) -> None:
        self._config = config

    @property
    def config(self) -> MappingConfig:
        return self._config

    # ── Allow-lists ────────────────────────────────────────────────────────

    def native_fields_for(self, mapped_type: MappedType) -> frozenset[str]:
        """Native field codes allowed for the mapped type's top-level type."""
        return NATIVE_FIELDS.get(mapped_type.a_type, NATIVE_FIELDS.get(mapped_type.a_entity, frozenset()))

    def custom_fields_for(
        self, mapped_type: MappedType, ctx: SyncContext | None = None
    ) -> dict[int, CustomFieldDefinition]:
        """Custom field definitions attached to the mapped type, by field id."""

        def build() -> dict[int, CustomFieldDefinition]:
            return {
                definition.field_id: definition
                for definition in self._config.custom_fields
                if definition.applies_to(mapped_type)
            }

        if ctx is None:
            return build()
        return ctx.memoize(("registry.custom_fields", mapped_type.key), build)

    def is_never_empty(self, code: str) -> bool:
        return code in NEVER_EMPTY_FIELDS

    def payload_code(self, code: str) -> str:
        return PAYLOAD_RENAMES.get(code, code)

    # ── Selector resolution (Store B -> Store A) ───────────────────────────

    def resolve(
        self, selector: str, mapped_type: MappedType, ctx: SyncContext | None = None
    ) -> ResolvedField | None:
        """Resolve a Store B selector to its Store A target.

        Returns None when the selector is unmapped for this mapped type, or
        when its target is not valid for the type (e.g. a custom field that
        is not attached to it). A field group may be shared between mapped
        types only some of which define the field, so a miss is not an error.
        """
        mapping = self._selector_index(mapped_type, ctx).get(selector)
        if mapping is None:
            return None
        if not self._target_valid(mapping, mapped_type, ctx):
            logger.debug(
                "registry.invalid_target",
                selector=selector,
                mapped_type=mapped_type.key,
                target=mapping.target.code,
            )
            return None
        return ResolvedField(mapping=mapping, payload_code=self.payload_code(mapping.target.code))

    def require(
        self, selector: str, mapped_type: MappedType, ctx: SyncContext | None = None
    ) -> ResolvedField:
        """Like resolve(), but raise MappingMiss when the selector does not resolve."""
        resolved = self.resolve(selector, mapped_type, ctx)
        if resolved is None:
            raise MappingMiss(selector, mapped_type.key)
        return resolved

    def _selector_index(self, mapped_type: MappedType, ctx: SyncContext | None) -> dict[str, FieldMapping]:
        def build() -> dict[str, FieldMapping]:
            return {m.selector: m for m in self._config.fields_for(mapped_type)}

        if ctx is None:
            return build()
        return ctx.memoize(("registry.selectors", mapped_type.key), build)

    def _target_valid(self, mapping: FieldMapping, mapped_type: MappedType, ctx: SyncContext | None) -> bool:
        target = mapping.target
        if isinstance(target, CustomField):
            return target.field_id in self.custom_fields_for(mapped_type, ctx)
        if isinstance(target, NativeField):
            return target.code in self.native_fields_for(mapped_type)
        # Relationships and sub-record families only exist on contacts
        return mapped_type.is_contact

    # ── Code resolution (Store A -> Store B) ───────────────────────────────

    def resolve_code(
        self, code: str, mapped_type: MappedType, ctx: SyncContext | None = None
    ):
        """Classify a raw Store A payload key into a FieldKind, or None.

        Custom membership is checked first, then the native allow-list
        (including renamed payload keys), then relationship codes.
        """
        match = _CUSTOM_CODE.match(code)
        if match and int(match.group(1)) in self.custom_fields_for(mapped_type, ctx):
            return CustomField(field_id=int(match.group(1)))

        native = self.native_fields_for(mapped_type)
        if code in native:
            return NativeField(code=code)
        for display, payload in PAYLOAD_RENAMES.items():
            if code == payload and display in native:
                return NativeField(code=display)

        if mapped_type.is_contact:
            match = _RELATIONSHIP_CODE.match(code)
            if match:
                return RelationshipField(
                    type_id=int(match.group(1)), direction=RelationshipDirection(match.group(2))
                )
            if code in {family.value for family in SubRecordFamily}:
                return SubRecordField(family=SubRecordFamily(code))
        return None

    def selectors_for(
        self,
        kind,
        mapped_type: MappedType,
        ctx: SyncContext | None = None,
        direction: SyncDirection | None = None,
    ) -> list[FieldMapping]:
        """All Store B mappings targeting ``kind`` on the mapped type.

        When ``direction`` is given, mappings that may not flow that way are
        excluded (A_TO_B mappings never flow B->A and vice versa).
        """

        def build() -> list[FieldMapping]:
            return [
                m
                for m in self._config.fields_for(mapped_type)
                if m.target == kind and self._target_valid(m, mapped_type, ctx)
            ]

        if ctx is None:
            mappings = build()
        else:
            mappings = ctx.memoize(("registry.kind", mapped_type.key, kind), build)
        if direction is None:
            return list(mappings)
        return [m for m in mappings if allows(m, direction)]

    def mappings_of_kind(
        self, mapped_type: MappedType, kind_name: str, ctx: SyncContext | None = None
    ) -> list[FieldMapping]:
        """Mappings whose target is of ``kind_name`` (native, custom, relationship, sub_record)."""

        def build() -> list[FieldMapping]:
            return [
                m
                for m in self._config.fields_for(mapped_type)
                if m.target.kind == kind_name and self._target_valid(m, mapped_type, ctx)
            ]

        if ctx is None:
            return build()
        return ctx.memoize(("registry.of_kind", mapped_type.key, kind_name), build)


def allows(mapping: FieldMapping, direction: SyncDirection) -> bool:
    """True if ``mapping`` may carry values in ``direction``."""
    return mapping.direction == SyncDirection.BOTH or mapping.direction == direction
