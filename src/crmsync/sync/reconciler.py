"""Set reconciliation -- minimal actions from a desired set vs. a current set.

Pure functions, no I/O:
- reconcile_relationships(): tuple-matched ignore/activate/deactivate/create
  buckets for relationship-style records that are deactivated, not deleted.
- reconcile_flag(): no-op/set/clear for a singleton boolean flag.
- reconcile_by_id(): create/update/ignore/delete for child records keyed by
  their own id (instant messenger handles, phones, addresses ...).
- reconcile_primary_family(): consistent flag transitions for a whole family
  so that at most one record holds a singleton flag such as is_primary.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

from src.crmsync.sync.schemas import (
    FlagAction,
    FlagTransition,
    IdPlan,
    LinkedSubRecord,
    PrimaryPlan,
    RelationshipDirection,
    RelationshipPlan,
    RelationshipRecord,
)


# ── Relationships ───────────────────────────────────────────────────────────


def reconcile_relationships(
    desired: Iterable[str],
    current: Sequence[RelationshipRecord],
    source_id: str,
    direction: RelationshipDirection,
) -> RelationshipPlan:
    """Diff the desired target ids of ``source_id`` against its current records.

    A current record matches a desired target when its directional
    (source, target) pair equals (source_id, target). Current records are
    walked in order; each consumes at most one desired target (first match
    wins) and a consumed target is never matched again, so a second record
    with the same pair is treated as unmatched. Desired targets left over
    become creates, in their original order. Duplicate desired targets
    collapse to one.

    Unmatched current records are deactivated when active and ignored when
    already inactive.
    """
    source_id = str(source_id)
    pending: list[str] = []
    for target in desired:
        target = str(target)
        if target not in pending:
            pending.append(target)

    plan = RelationshipPlan()
    for record in current:
        record_source, record_target = record.pair(direction)
        if record_source == source_id and record_target in pending:
            pending.remove(record_target)
            if record.is_active:
                plan.ignore.append(record)
            else:
                plan.activate.append(record)
        elif record.is_active:
            plan.deactivate.append(record)
        else:
            plan.ignore.append(record)

    plan.create.extend(pending)
    return plan


# ── Singleton Flags ─────────────────────────────────────────────────────────


def reconcile_flag(previous: bool | None, current: bool | None) -> FlagAction:
    """Three-way transition of a boolean flag. A missing previous value is off."""
    was_on = bool(previous)
    is_on = bool(current)
    if is_on and not was_on:
        return FlagAction.SET
    if was_on and not is_on:
        return FlagAction.CLEAR
    return FlagAction.NOOP


def reconcile_primary_family(
    records: Sequence[LinkedSubRecord],
    previous: Mapping[str, bool],
    flag: str = "is_primary",
) -> PrimaryPlan:
    """Derive flag transitions for every record of a family.

    ``records`` is the full desired family and ``previous`` maps persisted
    record ids to their stored flag value. At most one record ends up
    holding the flag:

    - a record whose flag newly switched on wins (the first one, if several);
    - otherwise the first record that still holds the flag wins;
    - every other record holding the flag is cleared.

    When no record holds the flag no record is promoted. The returned
    ``records`` are copies with the flag normalized.
    """
    flagged = [r for r in records if getattr(r, flag)]
    newly_on = [r for r in flagged if r.id is None or not previous.get(str(r.id), False)]
    winner = newly_on[0] if newly_on else (flagged[0] if flagged else None)

    plan = PrimaryPlan(flag=flag)
    for record in records:
        holds = winner is not None and record is winner
        was_on = bool(previous.get(str(record.id), False)) if record.id is not None else False
        plan.transitions.append(
            FlagTransition(
                record_id=record.id,
                row_index=record.row_index,
                action=reconcile_flag(was_on, holds),
            )
        )
        normalized = record.model_copy(update={flag: holds})
        plan.records.append(normalized)
        if holds:
            plan.winner = normalized
    return plan


# ── Records Keyed by Id ─────────────────────────────────────────────────────


def reconcile_by_id(
    desired: Sequence[LinkedSubRecord],
    current: Sequence[LinkedSubRecord],
) -> IdPlan:
    """Two-way diff by primary key.

    - desired without an id: create
    - desired whose id is not among the current ids: create (stale id, the
      id is dropped from the record)
    - desired whose id matches and whose values differ: update
    - desired whose id matches and whose values are unchanged: ignore
    - current whose id is absent from the desired ids: delete
    """
    current_by_id = {str(r.id): r for r in current if r.id is not None}
    desired_ids: set[str] = set()
    plan = IdPlan()

    for record in desired:
        if record.id is None:
            plan.create.append(record)
            continue
        record_id = str(record.id)
        existing = current_by_id.get(record_id)
        if existing is None:
            plan.stale_ids.append(record_id)
            plan.create.append(record.model_copy(update={"id": None}))
            continue
        desired_ids.add(record_id)
        if _changed(record, existing):
            plan.update.append(record)
        else:
            plan.ignore.append(record)

    plan.delete.extend(r for r in current if r.id is not None and str(r.id) not in desired_ids)
    return plan


def _changed(desired: LinkedSubRecord, existing: LinkedSubRecord) -> bool:
    """True if any value carried by ``desired`` differs from ``existing``."""
    wanted = desired.comparable()
    stored = existing.comparable()
    return any(stored.get(key, "") != value for key, value in wanted.items())
