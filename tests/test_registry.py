"""Tests for the field mapping registry and mapping configuration.

Covers selector resolution, Store A code classification, payload renames,
never-empty codes, direction filtering, pass memoization and the
uniqueness rules of MappingConfig.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from src.crmsync.core.exceptions import MappingMiss
from src.crmsync.sync.context import SyncContext
from src.crmsync.sync.registry import FieldMappingRegistry, allows
from src.crmsync.sync.schemas import (
    CustomField,
    FieldMapping,
    MappedType,
    MappingConfig,
    NativeField,
    RelationshipDirection,
    RelationshipField,
    SubRecordFamily,
    SubRecordField,
    SyncDirection,
)

from tests.sync_factories import ACTIVITY, EMPLOYEE_OF, INDIVIDUAL, ORGANIZATION, make_mapping_config


@pytest.fixture
def registry() -> FieldMappingRegistry:
    return FieldMappingRegistry(make_mapping_config())


# ── Selector Resolution ────────────────────────────────────────────────────


class TestResolve:
    def test_native_selector(self, registry):
        resolved = registry.resolve("field_first", INDIVIDUAL)

        assert resolved is not None
        assert resolved.kind == NativeField(code="first_name")
        assert resolved.payload_code == "first_name"
        assert resolved.selector == "field_first"

    def test_unmapped_selector_is_none(self, registry):
        assert registry.resolve("field_nope", INDIVIDUAL) is None

    def test_native_field_of_other_type_is_none(self, registry):
        """organization_name is not an Individual field."""
        assert registry.resolve("field_org_name", INDIVIDUAL) is None
        assert registry.resolve("field_org_name", ORGANIZATION) is not None

    def test_custom_field_not_attached_is_none(self, registry):
        """Custom field 5 extends Individual only."""
        assert registry.resolve("field_member_since", INDIVIDUAL) is not None
        assert registry.resolve("field_member_since", ORGANIZATION) is None

    def test_custom_field_extending_contact_applies_to_all_contacts(self, registry):
        assert registry.resolve("field_interests", INDIVIDUAL).kind == CustomField(field_id=7)
        assert registry.resolve("field_interests", ORGANIZATION).kind == CustomField(field_id=7)

    def test_renamed_payload_code(self, registry):
        resolved = registry.resolve("field_targets", ACTIVITY)

        assert resolved.kind == NativeField(code="target_contact_id")
        assert resolved.payload_code == "target_id"

    def test_relationship_selector(self, registry):
        resolved = registry.resolve("field_employer", INDIVIDUAL)

        assert resolved.kind == RelationshipField(type_id=EMPLOYEE_OF, direction=RelationshipDirection.AB)
        assert resolved.payload_code == "5_ab"

    def test_require_raises_mapping_miss(self, registry):
        with pytest.raises(MappingMiss) as exc_info:
            registry.require("field_org_name", INDIVIDUAL)

        assert exc_info.value.selector == "field_org_name"
        assert exc_info.value.mapped_type == INDIVIDUAL.key

    def test_require_returns_resolved_field(self, registry):
        assert registry.require("field_last", INDIVIDUAL).payload_code == "last_name"


# ── Code Resolution ────────────────────────────────────────────────────────


class TestResolveCode:
    def test_custom_code(self, registry):
        assert registry.resolve_code("custom_5", INDIVIDUAL) == CustomField(field_id=5)

    def test_custom_code_not_attached(self, registry):
        assert registry.resolve_code("custom_5", ORGANIZATION) is None

    def test_unknown_custom_id(self, registry):
        assert registry.resolve_code("custom_99", INDIVIDUAL) is None

    def test_native_code(self, registry):
        assert registry.resolve_code("birth_date", INDIVIDUAL) == NativeField(code="birth_date")

    def test_native_code_outside_allow_list(self, registry):
        assert registry.resolve_code("sic_code", INDIVIDUAL) is None

    def test_renamed_payload_key_maps_back(self, registry):
        assert registry.resolve_code("target_id", ACTIVITY) == NativeField(code="target_contact_id")
        assert registry.resolve_code("assignee_id", ACTIVITY) == NativeField(code="assignee_contact_id")

    def test_relationship_code_on_contacts_only(self, registry):
        expected = RelationshipField(type_id=12, direction=RelationshipDirection.BA)
        assert registry.resolve_code("12_ba", INDIVIDUAL) == expected
        assert registry.resolve_code("12_ba", ACTIVITY) is None

    def test_sub_record_family_code(self, registry):
        assert registry.resolve_code("phone", INDIVIDUAL) == SubRecordField(family=SubRecordFamily.PHONE)

    def test_never_empty_codes(self, registry):
        assert registry.is_never_empty("source_contact_id")
        assert registry.is_never_empty("activity_date_time")
        assert not registry.is_never_empty("subject")


# ── Reverse Lookup ─────────────────────────────────────────────────────────


class TestSelectorsFor:
    def test_all_selectors_for_kind(self, registry):
        selectors = [m.selector for m in registry.selectors_for(CustomField(field_id=9), INDIVIDUAL)]
        assert selectors == ["field_photo", "field_photo_copy"]

    def test_a_to_b_mapping_never_flows_back(self, registry):
        mappings = registry.selectors_for(
            CustomField(field_id=9), INDIVIDUAL, direction=SyncDirection.B_TO_A
        )
        assert [m.selector for m in mappings] == ["field_photo"]

    def test_both_directions_allowed_a_to_b(self, registry):
        mappings = registry.selectors_for(
            CustomField(field_id=9), INDIVIDUAL, direction=SyncDirection.A_TO_B
        )
        assert [m.selector for m in mappings] == ["field_photo", "field_photo_copy"]

    def test_invalid_targets_excluded(self, registry):
        assert registry.selectors_for(NativeField(code="organization_name"), INDIVIDUAL) == []

    def test_mappings_of_kind(self, registry):
        relationships = registry.mappings_of_kind(INDIVIDUAL, "relationship")
        assert [m.selector for m in relationships] == ["field_employer"]

    def test_allows(self):
        mapping = FieldMapping(
            selector="x", target=NativeField(code="first_name"), direction=SyncDirection.B_TO_A
        )
        assert allows(mapping, SyncDirection.B_TO_A)
        assert not allows(mapping, SyncDirection.A_TO_B)


class TestMemoization:
    def test_lookups_are_memoized_in_context(self, registry):
        ctx = SyncContext()
        first = registry.selectors_for(CustomField(field_id=9), INDIVIDUAL, ctx)
        second = registry.selectors_for(CustomField(field_id=9), INDIVIDUAL, ctx)

        assert first == second
        assert ("registry.kind", INDIVIDUAL.key, CustomField(field_id=9)) in ctx.memo

    def test_memo_keys_are_per_mapped_type(self, registry):
        ctx = SyncContext()
        individual = registry.custom_fields_for(INDIVIDUAL, ctx)
        organization = registry.custom_fields_for(ORGANIZATION, ctx)

        assert set(individual) == {5, 7, 9}
        assert set(organization) == {7}

    def test_memoized_resolution_matches_uncached(self, registry):
        ctx = SyncContext()
        for selector in ("field_first", "field_org_name", "field_member_since"):
            assert registry.resolve(selector, INDIVIDUAL, ctx) == registry.resolve(selector, INDIVIDUAL)


# ── MappingConfig ──────────────────────────────────────────────────────────


class TestMappingConfig:
    def test_store_a_type_mapped_twice(self):
        with pytest.raises(ValidationError, match="mapped more than once"):
            MappingConfig(
                mapped_types=[
                    MappedType(a_type="Individual", b_type="person"),
                    MappedType(a_type="Individual", b_type="member"),
                ]
            )

    def test_store_b_type_mapped_twice(self):
        with pytest.raises(ValidationError, match="mapped more than once"):
            MappingConfig(
                mapped_types=[
                    MappedType(a_type="Individual", b_type="person"),
                    MappedType(a_type="Organization", b_type="person"),
                ]
            )

    def test_subtype_is_most_specific_match(self):
        student = MappedType(a_type="Individual", a_subtype="Student", b_type="student")
        config = MappingConfig(mapped_types=[INDIVIDUAL, student])

        assert config.mapped_type_for_a("Contact", "Individual", ["Student"]) == student
        assert config.mapped_type_for_a("Contact", "Individual", ["Parent"]) == INDIVIDUAL
        assert config.mapped_type_for_a("Contact", "Individual") == INDIVIDUAL
        assert config.mapped_type_for_a("Contact", "Household") is None

    def test_lookup_by_b_type_and_key(self):
        config = make_mapping_config()

        assert config.mapped_type_for_b("organisation") == ORGANIZATION
        assert config.mapped_type_by_key("Individual:person") == INDIVIDUAL
        assert config.mapped_type_for_b("page") is None

    def test_create_defaults_identify_contact_type(self):
        student = MappedType(a_type="Individual", a_subtype="Student", b_type="student")

        assert student.key == "Individual/Student:student"
        assert student.create_defaults() == {"contact_type": "Individual", "contact_sub_type": "Student"}
        assert ACTIVITY.create_defaults() == {}
