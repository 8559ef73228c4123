"""Sub-record family providers.

Each provider describes one family of dependent Store A records (phones,
emails, instant messenger handles, addresses, websites) and converts
between three shapes of the same data:

- Store B repeater rows:   {"id", "location_type_id", "is_primary", <values>}
- LinkedSubRecord:         what the reconciler diffs
- Store A payloads:        {"contact_id", "location_type_id", "is_primary": 0/1, <values>}

The orchestrator is handed a list of providers at construction and looks
them up by family or Store A entity type; nothing is discovered at runtime.
"""

from __future__ import annotations

from typing import Any

from src.crmsync.sync.schemas import LinkedSubRecord, StoreRecord, SubRecordFamily, truthy


class SubRecordProvider:
    """Conversion rules for one sub-record family.

    Attributes:
        family: The family this provider handles.
        entity_type: Store A entity type of the records.
        value_fields: Store A fields carried in rows besides the common ones.
        flags: Singleton boolean flags (at most one record per contact holds each).
    """

    family: SubRecordFamily
    entity_type: str
    value_fields: tuple[str, ...] = ()
    flags: tuple[str, ...] = ("is_primary",)

    def from_row(self, row: dict[str, Any], parent_id: str | None, index: int | None = None) -> LinkedSubRecord:
        """Build a record from a Store B repeater row."""
        row_id = row.get("id")
        return LinkedSubRecord(
            id=str(row_id) if row_id not in (None, "") else None,
            parent_id=parent_id,
            family=self.family,
            fields={f: row.get(f) for f in self.value_fields if f in row},
            location_type_id=_as_int(row.get("location_type_id")),
            is_primary=truthy(row.get("is_primary", False)) if "is_primary" in self.flags else False,
            is_billing=truthy(row.get("is_billing", False)) if "is_billing" in self.flags else False,
            row_index=index,
        )

    def from_store(self, record: StoreRecord) -> LinkedSubRecord:
        """Build a record from a Store A record."""
        fields = record.fields
        master_id = fields.get("master_id")
        return LinkedSubRecord(
            id=record.id,
            parent_id=str(fields["contact_id"]) if fields.get("contact_id") is not None else None,
            family=self.family,
            fields={f: fields.get(f) for f in self.value_fields},
            location_type_id=_as_int(fields.get("location_type_id")),
            is_primary=truthy(fields.get("is_primary", False)),
            is_billing=truthy(fields.get("is_billing", False)),
            master_id=str(master_id) if master_id not in (None, "") else None,
        )

    def to_payload(self, record: LinkedSubRecord, parent_id: str) -> dict[str, Any]:
        """Store A create/update fields, without an id."""
        payload: dict[str, Any] = {"contact_id": parent_id}
        payload.update({k: v for k, v in record.fields.items() if k in self.value_fields})
        if record.location_type_id is not None:
            payload["location_type_id"] = record.location_type_id
        for flag in self.flags:
            payload[flag] = 1 if getattr(record, flag) else 0
        return payload

    def to_row(self, record: LinkedSubRecord) -> dict[str, Any]:
        """Store B repeater row."""
        row: dict[str, Any] = {"id": record.id}
        row.update({f: record.fields.get(f) for f in self.value_fields})
        row["location_type_id"] = record.location_type_id
        for flag in self.flags:
            row[flag] = getattr(record, flag)
        return row


class PhoneProvider(SubRecordProvider):
    family = SubRecordFamily.PHONE
    entity_type = "Phone"
    value_fields = ("phone", "phone_ext", "phone_type_id")


class EmailProvider(SubRecordProvider):
    family = SubRecordFamily.EMAIL
    entity_type = "Email"
    value_fields = ("email", "on_hold", "is_bulkmail")


class ImProvider(SubRecordProvider):
    family = SubRecordFamily.IM
    entity_type = "Im"
    value_fields = ("name", "provider_id")


class WebsiteProvider(SubRecordProvider):
    family = SubRecordFamily.WEBSITE
    entity_type = "Website"
    value_fields = ("url", "website_type_id")
    flags = ()


class AddressProvider(SubRecordProvider):
    """Postal addresses. May be shared with another contact via ``master_id``."""

    family = SubRecordFamily.ADDRESS
    entity_type = "Address"
    value_fields = (
        "street_address",
        "supplemental_address_1",
        "supplemental_address_2",
        "city",
        "postal_code",
        "state_province_id",
        "country_id",
        "geo_code_1",
        "geo_code_2",
    )
    flags = ("is_primary", "is_billing")

    def to_row(self, record: LinkedSubRecord) -> dict[str, Any]:
        row = super().to_row(record)
        row["master_id"] = record.master_id
        return row


def default_providers() -> list[SubRecordProvider]:
    """Providers for every built-in family."""
    return [PhoneProvider(), EmailProvider(), ImProvider(), WebsiteProvider(), AddressProvider()]


def _as_int(value: Any) -> int | None:
    if value in (None, ""):
        return None
    return int(value)
