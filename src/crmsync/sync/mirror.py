"""Store B mirroring helpers for list and repeater fields.

Pure functions used when a Store A change has to be reflected in a Store B
field value:
- add_target() / remove_target(): relationship list fields holding the
  Store A ids of related contacts.
- upsert_row() / remove_row(): repeater rows mirroring sub-records. An edit
  of a row that is not present is treated as a create, and a row flagged
  primary clears the flag on every other row.
- write_back_ids(): store ids generated by Store A on the rows they came from.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any


def as_id_list(value: Any) -> list[str]:
    """Normalize a relationship field value to a list of string ids."""
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value if v not in (None, "")]
    return [str(value)]


def add_target(values: Any, target_id: str) -> list[str]:
    ids = as_id_list(values)
    if str(target_id) not in ids:
        ids.append(str(target_id))
    return ids


def remove_target(values: Any, target_id: str) -> list[str]:
    return [v for v in as_id_list(values) if v != str(target_id)]


def as_rows(value: Any) -> list[dict[str, Any]]:
    """Normalize a repeater value to a list of row dicts (copies)."""
    if not value:
        return []
    return [dict(row) for row in value if isinstance(row, Mapping)]


def upsert_row(
    rows: Any,
    row: Mapping[str, Any],
    flags: Iterable[str] = ("is_primary",),
) -> list[dict[str, Any]]:
    """Replace the row with the same id, or append it when absent."""
    result = as_rows(rows)
    row = dict(row)
    row_id = str(row.get("id")) if row.get("id") is not None else None

    index = next(
        (i for i, existing in enumerate(result) if row_id is not None and str(existing.get("id")) == row_id),
        None,
    )
    if index is None:
        result.append(row)
    else:
        result[index] = {**result[index], **row}

    for flag in flags:
        if row.get(flag):
            for existing in result:
                if existing is not row and str(existing.get("id")) != row_id:
                    existing[flag] = False
    return result


def remove_row(rows: Any, row_id: str) -> list[dict[str, Any]]:
    return [row for row in as_rows(rows) if str(row.get("id")) != str(row_id)]


def write_back_ids(rows: Any, created: Iterable[tuple[int | None, str]]) -> list[dict[str, Any]]:
    """Set ``id`` on the rows at the given indexes."""
    result = as_rows(rows)
    for index, new_id in created:
        if index is not None and 0 <= index < len(result):
            result[index]["id"] = str(new_id)
    return result


def rows_equal(left: Any, right: Any) -> bool:
    return as_rows(left) == as_rows(right)
