"""Tests for set reconciliation.

Covers relationship matching (first match wins, deactivate instead of
delete), the singleton flag transitions, id-keyed child records including
stale ids, and the primary flag contract for whole families. Property
tests check that relationship plans always partition the current records.
"""

from __future__ import annotations

from hypothesis import given
from hypothesis import strategies as st

from src.crmsync.sync.reconciler import (
    reconcile_by_id,
    reconcile_flag,
    reconcile_primary_family,
    reconcile_relationships,
)
from src.crmsync.sync.schemas import (
    FlagAction,
    LinkedSubRecord,
    RelationshipDirection,
    RelationshipRecord,
    SubRecordFamily,
)

AB = RelationshipDirection.AB
BA = RelationshipDirection.BA


# ── Helpers ────────────────────────────────────────────────────────────────


def _rel(id, a, b, active=True, type_id=5) -> RelationshipRecord:
    return RelationshipRecord(id=id, contact_id_a=a, contact_id_b=b, type_id=type_id, is_active=active)


def _phone(id=None, phone="555-0100", primary=False, index=None) -> LinkedSubRecord:
    return LinkedSubRecord(
        id=id,
        family=SubRecordFamily.PHONE,
        fields={"phone": phone},
        is_primary=primary,
        row_index=index,
    )


def _ids(records) -> list[str]:
    return [r.id for r in records]


# ── Relationships ──────────────────────────────────────────────────────────


class TestReconcileRelationships:
    def test_new_targets_are_created(self):
        plan = reconcile_relationships(["200", "300"], [], "100", AB)

        assert plan.create == ["200", "300"]
        assert not plan.ignore and not plan.activate and not plan.deactivate

    def test_unchanged_active_is_ignored(self):
        plan = reconcile_relationships(["200"], [_rel("1", "100", "200")], "100", AB)

        assert _ids(plan.ignore) == ["1"]
        assert plan.is_empty

    def test_removed_target_is_deactivated_not_deleted(self):
        plan = reconcile_relationships([], [_rel("1", "100", "200")], "100", AB)

        assert _ids(plan.deactivate) == ["1"]
        assert plan.create == []

    def test_inactive_match_is_activated(self):
        plan = reconcile_relationships(["200"], [_rel("1", "100", "200", active=False)], "100", AB)

        assert _ids(plan.activate) == ["1"]
        assert plan.create == []

    def test_inactive_unmatched_is_ignored(self):
        plan = reconcile_relationships([], [_rel("1", "100", "200", active=False)], "100", AB)

        assert _ids(plan.ignore) == ["1"]
        assert plan.is_empty

    def test_first_match_wins_for_duplicate_pairs(self):
        """A second record with the same pair finds its target consumed."""
        current = [_rel("1", "100", "200"), _rel("2", "100", "200")]

        plan = reconcile_relationships(["200"], current, "100", AB)

        assert _ids(plan.ignore) == ["1"]
        assert _ids(plan.deactivate) == ["2"]

    def test_duplicate_desired_targets_collapse(self):
        plan = reconcile_relationships(["200", "200", 300], [], "100", AB)

        assert plan.create == ["200", "300"]

    def test_direction_selects_source_side(self):
        """For BA the syncing contact sits on contact_id_b."""
        current = [_rel("1", "100", "200")]

        plan = reconcile_relationships(["100"], current, "200", BA)

        assert _ids(plan.ignore) == ["1"]
        assert plan.create == []

    def test_record_of_other_source_is_not_matched(self):
        plan = reconcile_relationships(["200"], [_rel("1", "999", "200")], "100", AB)

        assert _ids(plan.deactivate) == ["1"]
        assert plan.create == ["200"]

    def test_mixed_targets_deactivate_activate_and_create(self):
        """Desired 2 and 3 against an active link to 1 and an inactive link to 2."""
        current = [_rel("9", "100", "1", active=True), _rel("10", "100", "2", active=False)]

        plan = reconcile_relationships(["2", "3"], current, "100", AB)

        assert _ids(plan.deactivate) == ["9"]
        assert _ids(plan.activate) == ["10"]
        assert plan.create == ["3"]
        assert plan.ignore == []

    @given(
        desired=st.lists(st.sampled_from(["200", "300", "400"]), max_size=5),
        current=st.lists(
            st.tuples(
                st.sampled_from(["100", "999"]),
                st.sampled_from(["200", "300", "400", "500"]),
                st.booleans(),
            ),
            max_size=6,
        ),
    )
    def test_plan_partitions_current_records(self, desired, current):
        records = [_rel(str(i), a, b, active) for i, (a, b, active) in enumerate(current)]

        plan = reconcile_relationships(desired, records, "100", AB)

        buckets = _ids(plan.ignore) + _ids(plan.activate) + _ids(plan.deactivate)
        assert sorted(buckets, key=int) == _ids(records)
        assert all(r.is_active for r in plan.deactivate)
        assert not any(r.is_active for r in plan.activate)

    @given(
        desired=st.lists(st.sampled_from(["200", "300", "400"]), max_size=5),
        current=st.lists(
            st.tuples(st.sampled_from(["200", "300", "400"]), st.booleans()),
            max_size=6,
        ),
    )
    def test_applying_plan_leaves_one_active_link_per_target(self, desired, current):
        records = [_rel(str(i), "100", b, active) for i, (b, active) in enumerate(current)]

        plan = reconcile_relationships(desired, records, "100", AB)

        active = [r.contact_id_b for r in plan.ignore if r.is_active]
        active += [r.contact_id_b for r in plan.activate]
        active += plan.create
        assert sorted(active) == sorted(set(desired))


# ── Singleton Flags ────────────────────────────────────────────────────────


class TestReconcileFlag:
    def test_transitions(self):
        assert reconcile_flag(False, True) == FlagAction.SET
        assert reconcile_flag(True, False) == FlagAction.CLEAR
        assert reconcile_flag(True, True) == FlagAction.NOOP
        assert reconcile_flag(False, False) == FlagAction.NOOP

    def test_missing_previous_is_off(self):
        assert reconcile_flag(None, True) == FlagAction.SET
        assert reconcile_flag(None, None) == FlagAction.NOOP


class TestReconcilePrimaryFamily:
    def test_newly_set_flag_wins(self):
        records = [_phone("1", primary=True), _phone("2", primary=True)]

        plan = reconcile_primary_family(records, {"1": True, "2": False})

        assert plan.winner.id == "2"
        assert [r.is_primary for r in plan.records] == [False, True]
        assert [t.action for t in plan.transitions] == [FlagAction.CLEAR, FlagAction.SET]

    def test_new_record_with_flag_wins(self):
        records = [_phone("1", primary=True), _phone(None, primary=True, index=1)]

        plan = reconcile_primary_family(records, {"1": True})

        assert plan.winner.row_index == 1
        assert [r.is_primary for r in plan.records] == [False, True]

    def test_first_holder_kept_when_nothing_switched_on(self):
        records = [_phone("1", primary=True), _phone("2", primary=True)]

        plan = reconcile_primary_family(records, {"1": True, "2": True})

        assert plan.winner.id == "1"
        assert [r.is_primary for r in plan.records] == [True, False]

    def test_no_holder_promotes_nobody(self):
        records = [_phone("1"), _phone("2")]

        plan = reconcile_primary_family(records, {"1": True})

        assert plan.winner is None
        assert [t.action for t in plan.transitions] == [FlagAction.CLEAR, FlagAction.NOOP]

    def test_input_records_are_not_mutated(self):
        records = [_phone("1", primary=True), _phone("2", primary=True)]

        reconcile_primary_family(records, {"1": True})

        assert [r.is_primary for r in records] == [True, True]

    @given(
        flags=st.lists(st.booleans(), max_size=6),
        stored=st.lists(st.booleans(), max_size=6),
    )
    def test_at_most_one_holder(self, flags, stored):
        records = [_phone(str(i), primary=flag) for i, flag in enumerate(flags)]
        previous = {str(i): flag for i, flag in enumerate(stored)}

        plan = reconcile_primary_family(records, previous)

        holders = [r for r in plan.records if r.is_primary]
        assert len(holders) == (1 if any(flags) else 0)


# ── Records Keyed by Id ────────────────────────────────────────────────────


class TestReconcileById:
    def test_rows_without_id_are_created(self):
        plan = reconcile_by_id([_phone(None, index=0)], [])

        assert len(plan.create) == 1
        assert plan.create[0].row_index == 0

    def test_changed_values_update(self):
        plan = reconcile_by_id([_phone("1", phone="555-0199")], [_phone("1")])

        assert _ids(plan.update) == ["1"]
        assert plan.delete == []

    def test_unchanged_values_ignored(self):
        plan = reconcile_by_id([_phone("1")], [_phone("1")])

        assert _ids(plan.ignore) == ["1"]
        assert plan.update == [] and plan.create == []

    def test_flag_change_is_an_update(self):
        plan = reconcile_by_id([_phone("1", primary=True)], [_phone("1")])

        assert _ids(plan.update) == ["1"]

    def test_current_missing_from_desired_is_deleted(self):
        plan = reconcile_by_id([_phone("1")], [_phone("1"), _phone("2", phone="555-0200")])

        assert _ids(plan.delete) == ["2"]

    def test_stale_id_is_created_without_id(self):
        plan = reconcile_by_id([_phone("77", index=0)], [_phone("1")])

        assert plan.stale_ids == ["77"]
        assert plan.create[0].id is None
        assert plan.create[0].row_index == 0
        assert _ids(plan.delete) == ["1"]

    def test_kept_new_and_dropped_rows(self):
        """Rows 1 and 2 kept, one new row added, row 3 removed."""
        desired = [_phone("1"), _phone("2", phone="555-0200"), _phone(None, phone="555-0300", index=2)]
        current = [_phone("1"), _phone("2", phone="555-0200"), _phone("3", phone="555-0300")]

        plan = reconcile_by_id(desired, current)

        assert [r.fields["phone"] for r in plan.create] == ["555-0300"]
        assert plan.create[0].id is None
        assert _ids(plan.delete) == ["3"]
        assert _ids(plan.ignore) == ["1", "2"]
        assert plan.update == []

    def test_string_and_int_ids_match(self):
        plan = reconcile_by_id([_phone(1)], [_phone("1")])

        assert _ids(plan.ignore) == ["1"]
