"""Sync orchestrator -- routes change events between Store A and Store B.

One inbound event runs the whole pipeline to completion:

    Detecting   -> classify the event, honor do-not-sync flags, look up the link
    Resolving   -> create or update, resolve and transcode the participating fields
    Applying    -> write through the store ports, reconcile multi-valued fields
    Broadcasting-> fire ``record.synced``; listeners push Store A derived fields
                   back onto the Store B record

Writes that would trigger the opposite store's listener chain are made
inside ``ctx.suppress(store)``; events arriving from a suppressed store are
ignored. On-demand creation of a missing counterpart is additionally guarded
by ``ctx.creating(...)`` so a create that re-enters the pipeline cannot
create the same counterpart twice.

No exception crosses handle_event() or sync_chunk(): configuration errors,
store failures and transcode failures are logged with context and turned
into a failed SyncOutcome for that record.
"""

from __future__ import annotations

from typing import Any

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.crmsync.config import Settings, get_settings
from src.crmsync.core.exceptions import ConfigurationError, RemoteError, SyncError, TranscodeFailure
from src.crmsync.sync.context import (
    SyncContext,
    get_current_context,
    reset_current_context,
    set_current_context,
)
from src.crmsync.sync.families import SubRecordProvider, default_providers
from src.crmsync.sync.identity import IdentityMap
from src.crmsync.sync.mirror import (
    add_target,
    as_id_list,
    as_rows,
    remove_row,
    remove_target,
    rows_equal,
    upsert_row,
    write_back_ids,
)
from src.crmsync.sync.notifier import CUSTOM_FIELD_UNLINKED, RECORD_SYNCED, ChangeNotifier
from src.crmsync.sync.ports import StoreError, StorePort, TransientStoreError
from src.crmsync.sync.reconciler import (
    reconcile_by_id,
    reconcile_primary_family,
    reconcile_relationships,
)
from src.crmsync.sync.registry import FieldMappingRegistry, ResolvedField, allows
from src.crmsync.sync.schemas import (
    ChunkResult,
    CustomField,
    FieldMapping,
    LinkedSubRecord,
    MappedType,
    MappingConfig,
    Operation,
    OutcomeStatus,
    RelationshipDirection,
    RelationshipField,
    RelationshipPlan,
    RelationshipRecord,
    Store,
    StoreRecord,
    SubRecordFamily,
    SubRecordField,
    SyncDirection,
    SyncEvent,
    SyncNotification,
    SyncOutcome,
)
from src.crmsync.sync.transcoder import OMIT, TranscodeContext, ValueTranscoder, split_multi

logger = structlog.get_logger(__name__)

RELATIONSHIP_ENTITY = "Relationship"
CONTACT_ENTITY = "Contact"


def contact_subtypes(fields: dict[str, Any]) -> list[str]:
    """Contact sub types of a Store A contact, from a list or a padded multi-value string."""
    return split_multi(fields.get("contact_sub_type"))


class SyncOrchestrator:
    """Keeps Store A and Store B records consistent, one event at a time.

    Args:
        config: Static mapping configuration.
        registry: Field mapping registry over ``config``.
        transcoder: Value transcoder.
        identity: Entity identity map.
        store_a: Port to the CRM-style store.
        store_b: Port to the content-style store.
        notifier: Local broadcaster. A private one is created when omitted.
        providers: Sub-record family providers. Defaults to every built-in family.
        settings: Application settings. Defaults to get_settings().
    """

    def __init__(
        self,
        config: MappingConfig,
        registry: FieldMappingRegistry,
        transcoder: ValueTranscoder,
        identity: IdentityMap,
        store_a: StorePort,
        store_b: StorePort,
        notifier: ChangeNotifier | None = None,
        providers: list[SubRecordProvider] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._transcoder = transcoder
        self._identity = identity
        self._ports: dict[Store, StorePort] = {Store.A: store_a, Store.B: store_b}
        self._notifier = notifier or ChangeNotifier()
        self._settings = settings or get_settings()

        providers = default_providers() if providers is None else providers
        self._families: dict[SubRecordFamily, SubRecordProvider] = {p.family: p for p in providers}
        self._family_entities: dict[str, SubRecordProvider] = {p.entity_type: p for p in providers}

        self._notifier.subscribe(RECORD_SYNCED, self._on_record_synced)
        self._notifier.subscribe(CUSTOM_FIELD_UNLINKED, self._on_custom_field_unlinked)

    @property
    def notifier(self) -> ChangeNotifier:
        return self._notifier

    # ── Entry point ────────────────────────────────────────────────────────

    async def handle_event(self, event: SyncEvent, ctx: SyncContext | None = None) -> SyncOutcome:
        """Process one change event from either store.

        Uses ``ctx`` when given, otherwise the context of the pass already
        running in this task (re-entrant events from store listeners), or a
        fresh one.
        """
        ctx = ctx or get_current_context() or SyncContext()
        token = set_current_context(ctx)
        log = logger.bind(
            pass_id=ctx.pass_id,
            store=event.store.value,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            operation=event.operation.value,
        )
        try:
            if ctx.is_suppressed(event.store):
                log.debug("sync.suppressed")
                return self._outcome(event, OutcomeStatus.SKIPPED, reason="suppressed")
            if event.store == Store.B:
                return await self.sync_b_to_a(event, ctx)
            if event.entity_type == RELATIONSHIP_ENTITY or event.entity_type in self._family_entities:
                return await self.sync_dependent(event, ctx)
            return await self.sync_a_to_b(event, ctx)
        except ConfigurationError as exc:
            log.error(
                "sync.configuration_error",
                error=str(exc),
                failed_operation=exc.operation,
                params=exc.params,
                exc_info=True,
            )
            return self._outcome(event, OutcomeStatus.FAILED, errors=[str(exc)], reason="configuration")
        except RemoteError as exc:
            log.error(
                "sync.remote_error",
                error=str(exc),
                failed_operation=exc.operation,
                params=exc.params,
                response=exc.response,
                exc_info=True,
            )
            return self._outcome(event, OutcomeStatus.FAILED, errors=[str(exc)], reason="remote")
        except SyncError as exc:
            log.error("sync.failed", error=str(exc), exc_info=True)
            return self._outcome(event, OutcomeStatus.FAILED, errors=[str(exc)], reason="sync")
        except Exception as exc:
            log.exception("sync.unexpected_error", error=str(exc))
            return self._outcome(event, OutcomeStatus.FAILED, errors=[str(exc)], reason="unexpected")
        finally:
            reset_current_context(token)

    # ── Detecting ──────────────────────────────────────────────────────────

    def _evaluate(self, event: SyncEvent, ctx: SyncContext) -> MappedType | None:
        """Mapped type of the event's record, or None when it must not be synced.

        The first evaluation of a record in a pass is recorded in the context
        and reused by every later hook for the same record, including hooks
        that only know the raw id.
        """
        record_id = str(event.entity_id)
        existing = ctx.evaluation(event.store, record_id)
        if existing is not None:
            return None if existing.do_not_sync else existing.mapped_type
        if event.entity_type is None:
            return None

        if event.store == Store.B:
            mapped_type = self._config.mapped_type_for_b(event.entity_type)
        else:
            mapped_type = self._config.mapped_type_for_a(event.entity_type, event.subtype, event.subtypes)
        do_not_sync = mapped_type is None or event.sync_disabled
        evaluation = ctx.evaluate(event.store, record_id, do_not_sync, mapped_type)
        return None if evaluation.do_not_sync else evaluation.mapped_type

    def _may_create(self, mapped_type: MappedType) -> bool:
        return mapped_type.allow_create and self._settings.SYNC_CREATE_MISSING_COUNTERPARTS

    # ── Store B -> Store A ─────────────────────────────────────────────────

    async def sync_b_to_a(self, event: SyncEvent, ctx: SyncContext) -> SyncOutcome:
        """Apply a Store B record change to its Store A counterpart."""
        if event.entity_id is None:
            raise ConfigurationError("Store B event without a record id", operation="sync_b_to_a")
        b_id = str(event.entity_id)

        mapped_type = self._evaluate(event, ctx)
        if mapped_type is None:
            logger.debug("sync.not_syncable", store="b", entity_id=b_id)
            return self._outcome(event, OutcomeStatus.SKIPPED, reason="not_syncable")

        ctx.set_origin(Store.B, b_id)
        a_id = await self._identity.get(mapped_type, Store.B, b_id, ctx)

        if event.operation == Operation.DELETE:
            return await self._unlink(event, mapped_type, b_id, a_id, ctx)

        guard = (mapped_type.key, Store.B, b_id)
        if a_id is None:
            # nothing is transcoded, and so no file exported, for a create that is skipped
            if not self._may_create(mapped_type):
                return self._outcome(event, OutcomeStatus.SKIPPED, mapped_type, reason="create_disabled")
            if ctx.is_creating(guard):
                logger.info("sync.create_in_progress", mapped_type=mapped_type.key, b_id=b_id)
                return self._outcome(event, OutcomeStatus.SKIPPED, mapped_type, reason="create_in_progress")

        operation = Operation.CREATE if a_id is None else Operation.EDIT
        scalars, relationships, families = self._partition_b_fields(event, mapped_type, ctx)
        payload, applied, errors = await self._transcode_to_a(
            scalars, mapped_type, ctx, operation, a_id, b_id, event.previous
        )

        if a_id is None:
            with ctx.creating(guard), ctx.suppress(Store.A):
                record = await self._create(
                    Store.A, mapped_type.a_entity, {**mapped_type.create_defaults(), **payload}
                )
            a_id = record.id
            await self._identity.set(mapped_type, a_id, b_id, ctx)
            status = OutcomeStatus.CREATED
        elif payload:
            with ctx.suppress(Store.A):
                await self._update(Store.A, mapped_type.a_entity, {"id": a_id, **payload})
            status = OutcomeStatus.UPDATED
        else:
            status = OutcomeStatus.SKIPPED

        for resolved, value in relationships:
            plan = await self._apply_relationships(mapped_type, a_id, resolved.mapping.target, value, ctx)
            if not plan.is_empty:
                applied.append(resolved.selector)
        for resolved, value in families:
            if await self._apply_family(mapped_type, a_id, b_id, resolved.mapping, value, ctx):
                applied.append(resolved.selector)
        if status == OutcomeStatus.SKIPPED and applied:
            status = OutcomeStatus.UPDATED

        await self._broadcast(
            mapped_type,
            Store.B,
            before_id=None if status == OutcomeStatus.CREATED else a_id,
            after_id=a_id,
            source_id=b_id,
        )
        logger.info(
            "sync.b_to_a_complete",
            mapped_type=mapped_type.key,
            a_id=a_id,
            b_id=b_id,
            status=status.value,
            fields=len(applied),
            errors=len(errors),
        )
        return self._outcome(
            event,
            status,
            mapped_type,
            target_id=a_id,
            applied_fields=applied,
            errors=errors,
            reason=None if applied or status != OutcomeStatus.SKIPPED else "no_changes",
        )

    def _partition_b_fields(
        self, event: SyncEvent, mapped_type: MappedType, ctx: SyncContext
    ) -> tuple[list[tuple[ResolvedField, Any]], list[tuple[ResolvedField, Any]], list[tuple[ResolvedField, Any]]]:
        """Split changed Store B fields into scalar, relationship and sub-record fields.

        Unmapped selectors and mappings that only flow A->B are dropped.
        """
        scalars: list[tuple[ResolvedField, Any]] = []
        relationships: list[tuple[ResolvedField, Any]] = []
        families: list[tuple[ResolvedField, Any]] = []
        for selector, value in event.fields.items():
            resolved = self._registry.resolve(selector, mapped_type, ctx)
            if resolved is None or not allows(resolved.mapping, SyncDirection.B_TO_A):
                continue
            if isinstance(resolved.kind, RelationshipField):
                relationships.append((resolved, value))
            elif isinstance(resolved.kind, SubRecordField):
                families.append((resolved, value))
            else:
                scalars.append((resolved, value))
        return scalars, relationships, families

    async def _transcode_to_a(
        self,
        fields: list[tuple[ResolvedField, Any]],
        mapped_type: MappedType,
        ctx: SyncContext,
        operation: Operation,
        a_id: str | None,
        b_id: str,
        previous: dict[str, Any],
    ) -> tuple[dict[str, Any], list[str], list[str]]:
        payload: dict[str, Any] = {}
        applied: list[str] = []
        errors: list[str] = []
        for resolved, value in fields:
            tctx = TranscodeContext(
                ctx=ctx,
                mapped_type=mapped_type,
                operation=operation,
                a_id=a_id,
                b_id=b_id,
                previous=previous.get(resolved.selector),
            )
            try:
                converted = await self._transcoder.to_store_a(value, resolved.mapping, tctx)
            except TranscodeFailure as exc:
                logger.warning(
                    "sync.transcode_failed",
                    direction="b_to_a",
                    selector=resolved.selector,
                    reason=exc.reason,
                )
                errors.append(str(exc))
                continue
            if converted is OMIT:
                continue
            payload[resolved.payload_code] = converted
            applied.append(resolved.selector)
        return payload, applied, errors

    # ── Relationships ──────────────────────────────────────────────────────

    async def _apply_relationships(
        self,
        mapped_type: MappedType,
        a_id: str,
        kind: RelationshipField,
        value: Any,
        ctx: SyncContext,
    ) -> RelationshipPlan:
        """Reconcile one relationship field of a contact and mirror the result."""
        direction = kind.direction
        children = await self._call(Store.A, "query_children", RELATIONSHIP_ENTITY, a_id)
        current = [
            record
            for record in (RelationshipRecord.from_store(child) for child in children)
            if record.type_id == kind.type_id and record.source(direction) == str(a_id)
        ]
        plan = reconcile_relationships(as_id_list(value), current, a_id, direction)
        logger.info(
            "sync.relationships_reconciled",
            mapped_type=mapped_type.key,
            a_id=a_id,
            type_id=kind.type_id,
            direction=direction.value,
            create=len(plan.create),
            activate=len(plan.activate),
            deactivate=len(plan.deactivate),
            ignore=len(plan.ignore),
        )

        with ctx.suppress(Store.A):
            for target in plan.create:
                contact_a, contact_b = (a_id, target) if direction == RelationshipDirection.AB else (target, a_id)
                await self._create(
                    Store.A,
                    RELATIONSHIP_ENTITY,
                    {
                        "contact_id_a": contact_a,
                        "contact_id_b": contact_b,
                        "relationship_type_id": kind.type_id,
                        "is_active": 1,
                    },
                )
            for record in plan.activate:
                await self._update(Store.A, RELATIONSHIP_ENTITY, {"id": record.id, "is_active": 1})
            for record in plan.deactivate:
                await self._update(Store.A, RELATIONSHIP_ENTITY, {"id": record.id, "is_active": 0})

        reverse = RelationshipField(type_id=kind.type_id, direction=direction.reverse)
        for target in [*plan.create, *(r.target(direction) for r in plan.activate)]:
            await self._mirror_relationship(reverse, target, a_id, True, ctx)
        for record in plan.deactivate:
            await self._mirror_relationship(reverse, record.target(direction), a_id, False, ctx)
        return plan

    async def _mirror_relationship(
        self,
        kind: RelationshipField,
        owner_id: str,
        member_id: str,
        add: bool,
        ctx: SyncContext,
    ) -> bool:
        """Add or remove ``member_id`` in the ``kind`` list field of the owner's Store B record."""
        found = await self._identity.find_contact(self._config.contact_types(), owner_id, ctx)
        if found is None:
            return False
        mapped_type, b_id = found
        if ctx.is_origin(Store.B, b_id):
            logger.debug("sync.reverse_edit_skipped", b_id=b_id, kind=kind.code)
            return False
        mappings = self._registry.selectors_for(kind, mapped_type, ctx, direction=SyncDirection.A_TO_B)
        if not mappings:
            return False

        record = await self._call(Store.B, "get_by_id", mapped_type.b_type, b_id)
        if record is None:
            return False
        changes: dict[str, Any] = {}
        for mapping in mappings:
            current = record.get(mapping.selector)
            updated = add_target(current, member_id) if add else remove_target(current, member_id)
            if updated != as_id_list(current):
                changes[mapping.selector] = updated
        if not changes:
            return False
        with ctx.suppress(Store.B):
            await self._update(Store.B, mapped_type.b_type, {"id": b_id, **changes})
        return True

    # ── Sub-record families ────────────────────────────────────────────────

    async def _apply_family(
        self,
        mapped_type: MappedType,
        a_id: str,
        b_id: str,
        mapping: FieldMapping,
        value: Any,
        ctx: SyncContext,
    ) -> bool:
        """Reconcile a repeater of sub-record rows against Store A's records.

        Flags such as is_primary are normalized over the whole family first,
        then rows are diffed by id. Ids generated by Store A are written back
        onto the Store B rows they came from.
        """
        provider = self._families.get(mapping.target.family)
        if provider is None:
            logger.warning("sync.no_family_provider", family=mapping.target.code)
            return False

        rows = as_rows(value)
        desired = [provider.from_row(row, a_id, index) for index, row in enumerate(rows)]
        children = await self._call(Store.A, "query_children", provider.entity_type, a_id)
        current = [provider.from_store(child) for child in children]
        for flag in provider.flags:
            stored = {str(record.id): getattr(record, flag) for record in current}
            desired = reconcile_primary_family(desired, stored, flag).records

        plan = reconcile_by_id(desired, current)
        if plan.stale_ids:
            logger.warning("sync.stale_sub_record_ids", family=provider.family.value, ids=plan.stale_ids)

        created: list[tuple[int | None, str]] = []
        with ctx.suppress(Store.A):
            for record in plan.delete:
                await self._delete(Store.A, provider.entity_type, record.id)
            for record in plan.update:
                await self._update(
                    Store.A, provider.entity_type, {"id": record.id, **provider.to_payload(record, a_id)}
                )
            for record in plan.create:
                new = await self._create(Store.A, provider.entity_type, provider.to_payload(record, a_id))
                created.append((record.row_index, new.id))

        rows_out = write_back_ids(rows, created)
        for record in desired:
            for flag in provider.flags:
                if record.row_index is not None:
                    rows_out[record.row_index][flag] = getattr(record, flag)
        if not rows_equal(rows_out, rows):
            with ctx.suppress(Store.B):
                await self._update(Store.B, mapped_type.b_type, {"id": b_id, mapping.selector: rows_out})

        return bool(plan.create or plan.update or plan.delete)

    # ── Store A -> Store B ─────────────────────────────────────────────────

    async def sync_a_to_b(self, event: SyncEvent, ctx: SyncContext) -> SyncOutcome:
        """Apply a Store A record change to its Store B counterpart."""
        if event.entity_id is None:
            raise ConfigurationError("Store A event without a record id", operation="sync_a_to_b")
        a_id = str(event.entity_id)

        if event.entity_type == CONTACT_ENTITY and event.subtype is None:
            if event.operation == Operation.DELETE:
                found = await self._identity.find_contact(self._config.contact_types(), a_id, ctx)
                if found is None:
                    return self._outcome(event, OutcomeStatus.SKIPPED, reason="not_linked")
                return await self._unlink(event, found[0], a_id, found[1], ctx)
            event = await self._with_contact_type(event)

        mapped_type = self._evaluate(event, ctx)
        if mapped_type is None:
            logger.debug("sync.not_syncable", store="a", entity_id=a_id)
            return self._outcome(event, OutcomeStatus.SKIPPED, reason="not_syncable")

        ctx.set_origin(Store.A, a_id)
        b_id = await self._identity.get(mapped_type, Store.A, a_id, ctx)

        if event.operation == Operation.DELETE:
            return await self._unlink(event, mapped_type, a_id, b_id, ctx)

        operation = Operation.CREATE if b_id is None else Operation.EDIT
        payload, applied, errors = await self._transcode_to_b(
            event.fields, mapped_type, ctx, operation, a_id, b_id
        )
        if event.include_related:
            related = await self._related_values(mapped_type, a_id, ctx)
            payload.update(related)
            applied.extend(related)

        if b_id is None:
            if not self._may_create(mapped_type):
                return self._outcome(event, OutcomeStatus.SKIPPED, mapped_type, reason="create_disabled")
            guard = (mapped_type.key, Store.A, a_id)
            if ctx.is_creating(guard):
                logger.info("sync.create_in_progress", mapped_type=mapped_type.key, a_id=a_id)
                return self._outcome(event, OutcomeStatus.SKIPPED, mapped_type, reason="create_in_progress")
            with ctx.creating(guard), ctx.suppress(Store.B):
                record = await self._create(Store.B, mapped_type.b_type, payload)
            b_id = record.id
            await self._identity.set(mapped_type, a_id, b_id, ctx)
            status = OutcomeStatus.CREATED
        elif payload:
            with ctx.suppress(Store.B):
                await self._update(Store.B, mapped_type.b_type, {"id": b_id, **payload})
            status = OutcomeStatus.UPDATED
        else:
            return self._outcome(
                event, OutcomeStatus.SKIPPED, mapped_type, target_id=b_id, errors=errors, reason="no_changes"
            )

        await self._broadcast(
            mapped_type,
            Store.A,
            before_id=None if status == OutcomeStatus.CREATED else b_id,
            after_id=b_id,
            source_id=a_id,
        )
        logger.info(
            "sync.a_to_b_complete",
            mapped_type=mapped_type.key,
            a_id=a_id,
            b_id=b_id,
            status=status.value,
            fields=len(applied),
            errors=len(errors),
        )
        return self._outcome(
            event, status, mapped_type, target_id=b_id, applied_fields=applied, errors=errors
        )

    async def _with_contact_type(self, event: SyncEvent) -> SyncEvent:
        """Fill in the contact type of a Store A contact event from the store."""
        record = await self._call(Store.A, "get_by_id", CONTACT_ENTITY, str(event.entity_id))
        if record is None:
            return event
        return event.model_copy(
            update={"subtype": record.get("contact_type"), "subtypes": contact_subtypes(record.fields)}
        )

    async def _transcode_to_b(
        self,
        fields: dict[str, Any],
        mapped_type: MappedType,
        ctx: SyncContext,
        operation: Operation,
        a_id: str,
        b_id: str | None,
    ) -> tuple[dict[str, Any], list[str], list[str]]:
        payload: dict[str, Any] = {}
        applied: list[str] = []
        errors: list[str] = []
        existing: StoreRecord | None = None
        existing_loaded = False

        for code, value in fields.items():
            kind = self._registry.resolve_code(code, mapped_type, ctx)
            if kind is None or isinstance(kind, (RelationshipField, SubRecordField)):
                continue
            for mapping in self._registry.selectors_for(kind, mapped_type, ctx, direction=SyncDirection.A_TO_B):
                previous = None
                if b_id is not None and mapping.field_type.value in ("image", "file"):
                    if not existing_loaded:
                        existing = await self._call(Store.B, "get_by_id", mapped_type.b_type, b_id)
                        existing_loaded = True
                    previous = existing.get(mapping.selector) if existing else None
                tctx = TranscodeContext(
                    ctx=ctx,
                    mapped_type=mapped_type,
                    operation=operation,
                    a_id=a_id,
                    b_id=b_id,
                    previous=previous,
                )
                try:
                    payload[mapping.selector] = await self._transcoder.to_store_b(value, mapping, tctx)
                except TranscodeFailure as exc:
                    logger.warning(
                        "sync.transcode_failed",
                        direction="a_to_b",
                        selector=mapping.selector,
                        reason=exc.reason,
                    )
                    errors.append(str(exc))
                    continue
                applied.append(mapping.selector)
        return payload, applied, errors

    async def _related_values(self, mapped_type: MappedType, a_id: str, ctx: SyncContext) -> dict[str, Any]:
        """Store B values of every relationship and sub-record field of a contact."""
        values: dict[str, Any] = {}
        relationship_mappings = [
            m
            for m in self._registry.mappings_of_kind(mapped_type, "relationship", ctx)
            if allows(m, SyncDirection.A_TO_B)
        ]
        if relationship_mappings:
            children = await self._call(Store.A, "query_children", RELATIONSHIP_ENTITY, a_id)
            relationships = [RelationshipRecord.from_store(child) for child in children]
            for mapping in relationship_mappings:
                kind = mapping.target
                targets: list[str] = []
                for record in relationships:
                    if (
                        record.is_active
                        and record.type_id == kind.type_id
                        and record.source(kind.direction) == a_id
                    ):
                        targets = add_target(targets, record.target(kind.direction))
                values[mapping.selector] = targets

        for mapping in self._registry.mappings_of_kind(mapped_type, "sub_record", ctx):
            provider = self._families.get(mapping.target.family)
            if provider is None or not allows(mapping, SyncDirection.A_TO_B):
                continue
            children = await self._call(Store.A, "query_children", provider.entity_type, a_id)
            values[mapping.selector] = [provider.to_row(provider.from_store(child)) for child in children]
        return values

    # ── Dependent Store A records ──────────────────────────────────────────

    async def sync_dependent(self, event: SyncEvent, ctx: SyncContext) -> SyncOutcome:
        """Mirror a Store A relationship or sub-record change onto Store B records."""
        if event.entity_id is None:
            raise ConfigurationError("Store A event without a record id", operation="sync_dependent")
        if event.entity_type == RELATIONSHIP_ENTITY:
            return await self._sync_relationship_event(event, ctx)
        provider = self._family_entities[event.entity_type]
        return await self._sync_sub_record_event(provider, event, ctx)

    async def _complete_fields(self, event: SyncEvent, required: tuple[str, ...]) -> dict[str, Any]:
        """Event fields, completed from Store A when required keys are missing."""
        fields = dict(event.fields)
        if all(key in fields for key in required) or event.operation == Operation.DELETE:
            return fields
        record = await self._call(Store.A, "get_by_id", event.entity_type, str(event.entity_id))
        if record is None:
            return fields
        return {**record.fields, **fields}

    async def _sync_relationship_event(self, event: SyncEvent, ctx: SyncContext) -> SyncOutcome:
        fields = await self._complete_fields(event, ("contact_id_a", "contact_id_b", "relationship_type_id"))
        try:
            record = RelationshipRecord.from_store(
                StoreRecord(id=str(event.entity_id), type=RELATIONSHIP_ENTITY, fields=fields)
            )
        except KeyError as exc:
            raise ConfigurationError(
                f"Relationship event missing {exc}", operation="sync_relationship", params=fields
            ) from exc

        active = record.is_active and event.operation != Operation.DELETE
        mirrored = False
        for direction in RelationshipDirection:
            kind = RelationshipField(type_id=record.type_id, direction=direction)
            if await self._mirror_relationship(kind, record.source(direction), record.target(direction), active, ctx):
                mirrored = True
        return self._outcome(
            event,
            OutcomeStatus.UPDATED if mirrored else OutcomeStatus.SKIPPED,
            reason=None if mirrored else "no_changes",
        )

    async def _sync_sub_record_event(
        self, provider: SubRecordProvider, event: SyncEvent, ctx: SyncContext
    ) -> SyncOutcome:
        fields = await self._complete_fields(event, ("contact_id",))
        if fields.get("contact_id") in (None, ""):
            return self._outcome(event, OutcomeStatus.SKIPPED, reason="no_parent")

        record = provider.from_store(StoreRecord(id=str(event.entity_id), type=provider.entity_type, fields=fields))
        deleted = event.operation == Operation.DELETE
        mirrored = await self._mirror_sub_record(provider, record, deleted, ctx)

        if deleted and provider.family == SubRecordFamily.ADDRESS:
            await self._propagate_shared_addresses(provider, str(event.entity_id), ctx)

        return self._outcome(
            event,
            OutcomeStatus.UPDATED if mirrored else OutcomeStatus.SKIPPED,
            reason=None if mirrored else "no_changes",
        )

    async def _mirror_sub_record(
        self, provider: SubRecordProvider, record: LinkedSubRecord, deleted: bool, ctx: SyncContext
    ) -> bool:
        """Upsert or remove one row in the parent contact's Store B repeater."""
        found = await self._identity.find_contact(self._config.contact_types(), str(record.parent_id), ctx)
        if found is None:
            return False
        mapped_type, b_id = found
        if ctx.is_origin(Store.B, b_id):
            logger.debug("sync.reverse_edit_skipped", b_id=b_id, family=provider.family.value)
            return False
        kind = SubRecordField(family=provider.family)
        mappings = self._registry.selectors_for(kind, mapped_type, ctx, direction=SyncDirection.A_TO_B)
        if not mappings:
            return False

        b_record = await self._call(Store.B, "get_by_id", mapped_type.b_type, b_id)
        if b_record is None:
            return False
        changes: dict[str, Any] = {}
        for mapping in mappings:
            rows = b_record.get(mapping.selector)
            if deleted:
                updated = remove_row(rows, str(record.id))
            else:
                updated = upsert_row(rows, provider.to_row(record), provider.flags)
            if not rows_equal(updated, rows):
                changes[mapping.selector] = updated
        if not changes:
            return False
        with ctx.suppress(Store.B):
            await self._update(Store.B, mapped_type.b_type, {"id": b_id, **changes})
        return True

    async def _propagate_shared_addresses(
        self, provider: SubRecordProvider, master_id: str, ctx: SyncContext
    ) -> int:
        """Re-mirror every address that was shared from a deleted master address."""
        offset = 0
        processed = 0
        limit = self._settings.SYNC_CHUNK_SIZE
        while True:
            page = await self._call(
                Store.A, "query_chunk", provider.entity_type, {"master_id": master_id}, offset, limit
            )
            for item in page.items:
                shared = provider.from_store(item)
                if shared.parent_id is not None:
                    await self._mirror_sub_record(provider, shared, False, ctx)
                    processed += 1
            offset += len(page.items)
            if not page.items or offset >= page.total:
                break
        if processed:
            logger.info("sync.shared_addresses_processed", master_id=master_id, count=processed)
        return processed

    # ── Deletes ────────────────────────────────────────────────────────────

    async def _unlink(
        self,
        event: SyncEvent,
        mapped_type: MappedType,
        record_id: str,
        counterpart_id: str | None,
        ctx: SyncContext,
    ) -> SyncOutcome:
        """Drop the link of a deleted record. The counterpart record is kept."""
        if counterpart_id is None:
            return self._outcome(event, OutcomeStatus.SKIPPED, mapped_type, reason="not_linked")
        await self._identity.remove(mapped_type, event.store, record_id, ctx)
        return self._outcome(event, OutcomeStatus.DELETED, mapped_type, target_id=counterpart_id)

    # ── Broadcasting ───────────────────────────────────────────────────────

    async def _broadcast(
        self,
        mapped_type: MappedType,
        source: Store,
        before_id: str | None,
        after_id: str | None,
        source_id: str,
    ) -> None:
        await self._notifier.notify(
            SyncNotification(
                name=RECORD_SYNCED,
                mapped_type=mapped_type.key,
                store=source,
                before_id=before_id,
                after_id=after_id,
                source_id=source_id,
            )
        )

    async def _on_record_synced(self, notification: SyncNotification) -> None:
        """Push Store A derived fields back onto the Store B record after a B->A write."""
        if notification.store != Store.B or notification.after_id is None or notification.source_id is None:
            return
        mapped_type = self._config.mapped_type_by_key(notification.mapped_type or "")
        if mapped_type is None:
            return
        ctx = get_current_context() or SyncContext()
        derived = [
            m
            for kind_name in ("native", "custom")
            for m in self._registry.mappings_of_kind(mapped_type, kind_name, ctx)
            if m.direction == SyncDirection.A_TO_B
        ]
        if not derived:
            return

        a_id = str(notification.after_id)
        b_id = str(notification.source_id)
        record = await self._call(Store.A, "get_by_id", mapped_type.a_entity, a_id)
        if record is None:
            return
        payload: dict[str, Any] = {}
        for mapping in derived:
            code = self._registry.payload_code(mapping.target.code)
            if code not in record.fields and mapping.target.code not in record.fields:
                continue
            value = record.fields.get(code, record.fields.get(mapping.target.code))
            tctx = TranscodeContext(ctx=ctx, mapped_type=mapped_type, a_id=a_id, b_id=b_id)
            try:
                payload[mapping.selector] = await self._transcoder.to_store_b(value, mapping, tctx)
            except TranscodeFailure as exc:
                logger.warning("sync.transcode_failed", direction="a_to_b", selector=mapping.selector, reason=exc.reason)
        if not payload:
            return
        with ctx.suppress(Store.B):
            await self._update(Store.B, mapped_type.b_type, {"id": b_id, **payload})
        logger.debug("sync.derived_fields_pushed", b_id=b_id, fields=sorted(payload))

    async def _on_custom_field_unlinked(self, notification: SyncNotification) -> None:
        """Clear the other Store B fields that observe a custom field which was just emptied."""
        mapped_type = self._config.mapped_type_by_key(notification.mapped_type or "")
        if mapped_type is None or notification.source_id is None:
            return
        ctx = get_current_context() or SyncContext()
        kind = self._registry.resolve_code(str(notification.data.get("code", "")), mapped_type, ctx)
        if not isinstance(kind, CustomField):
            return
        selector = notification.data.get("selector")
        others = [
            m
            for m in self._registry.selectors_for(kind, mapped_type, ctx, direction=SyncDirection.A_TO_B)
            if m.selector != selector
        ]
        if not others:
            return
        with ctx.suppress(Store.B):
            await self._update(
                Store.B,
                mapped_type.b_type,
                {"id": str(notification.source_id), **{m.selector: None for m in others}},
            )

    # ── Batch ──────────────────────────────────────────────────────────────

    async def sync_chunk(
        self,
        type_key: str,
        offset: int,
        limit: int | None = None,
        source: Store = Store.A,
        ctx: SyncContext | None = None,
    ) -> ChunkResult:
        """Sync one page of records of a mapped type from ``source``.

        Pages through the source store's own offset/limit query; the full
        result set is never loaded. Each item runs in a forked context, so a
        failure only affects that item.
        """
        limit = limit or self._settings.SYNC_CHUNK_SIZE
        mapped_type = self._config.mapped_type_by_key(type_key)
        if mapped_type is None:
            logger.error("sync.chunk_unknown_type", type_key=type_key)
            return ChunkResult(
                offset=offset, next_offset=offset, done=True, aborted=True,
                errors=[f"Unknown mapped type {type_key!r}"],
            )

        if source == Store.A:
            entity = mapped_type.a_entity
            query_filter = mapped_type.create_defaults()
        else:
            entity = mapped_type.b_type
            query_filter = {}

        try:
            page = await self._call(source, "query_chunk", entity, query_filter, offset, limit)
        except RemoteError as exc:
            logger.error(
                "sync.chunk_query_failed",
                type_key=type_key,
                offset=offset,
                error=str(exc),
                response=exc.response,
            )
            return ChunkResult(offset=offset, next_offset=offset, done=True, aborted=True, errors=[str(exc)])

        parent = ctx or SyncContext()
        result = ChunkResult(count=len(page.items), total=page.total, offset=offset)
        for item in page.items:
            subtypes: list[str] = []
            if source == Store.A:
                subtypes = contact_subtypes(item.fields)
                routed = self._config.mapped_type_for_a(entity, mapped_type.a_type, subtypes)
                if routed != mapped_type:
                    # the query filter also matches records of more specific mapped types
                    logger.debug(
                        "sync.chunk_item_routed_elsewhere",
                        type_key=type_key,
                        a_id=item.id,
                        routed_to=routed.key if routed else None,
                    )
                    result.skipped += 1
                    continue
            event = SyncEvent(
                store=source,
                entity_type=entity,
                entity_id=item.id,
                operation=Operation.EDIT,
                fields=item.fields,
                subtype=mapped_type.a_type if source == Store.A else None,
                subtypes=subtypes,
                include_related=True,
            )
            outcome = await self.handle_event(event, parent.fork())
            if outcome.status == OutcomeStatus.FAILED:
                result.failed += 1
                result.errors.extend(outcome.errors)
            elif outcome.status == OutcomeStatus.SKIPPED:
                result.skipped += 1
            else:
                result.applied += 1

        result.next_offset = offset + len(page.items)
        result.done = not page.items or result.next_offset >= page.total
        logger.info(
            "sync.chunk_complete",
            type_key=type_key,
            source=source.value,
            offset=offset,
            count=result.count,
            applied=result.applied,
            failed=result.failed,
            total=result.total,
        )
        return result

    # ── Store calls ────────────────────────────────────────────────────────

    async def _call(self, store: Store, method: str, *args: Any) -> Any:
        """Call a store port, retrying transient failures.

        Store failures (after retries) and unexpected adapter errors become
        RemoteError carrying the operation, parameters and store response.
        """
        port = self._ports[store]
        operation = f"{store.value}.{method}"
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._settings.REMOTE_MAX_RETRIES),
            wait=wait_exponential(
                multiplier=1,
                min=self._settings.REMOTE_RETRY_MIN_WAIT,
                max=self._settings.REMOTE_RETRY_MAX_WAIT,
            ),
            retry=retry_if_exception_type(TransientStoreError),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await getattr(port, method)(*args)
        except StoreError as exc:
            raise RemoteError(
                f"{operation} failed: {exc}",
                operation=operation,
                params={"args": list(args)},
                response=exc.response,
            ) from exc
        except Exception as exc:
            raise RemoteError(
                f"{operation} failed: {exc}",
                operation=operation,
                params={"args": list(args)},
            ) from exc

    async def _create(self, store: Store, type: str, fields: dict[str, Any]) -> StoreRecord:
        """Create a record. Presence of an id always means update, so it is rejected here."""
        if "id" in fields:
            raise ConfigurationError(
                f"Create of {type} must not carry an id",
                operation=f"{store.value}.create",
                params=fields,
            )
        record = await self._call(store, "create", type, fields)
        if record is None:
            raise RemoteError(
                f"{store.value}.create returned no record",
                operation=f"{store.value}.create",
                params=fields,
            )
        logger.info("sync.record_created", store=store.value, type=type, id=record.id)
        return record

    async def _update(self, store: Store, type: str, fields: dict[str, Any]) -> StoreRecord:
        """Update a record. Fields without an id are rejected rather than treated as a create."""
        if fields.get("id") in (None, ""):
            raise ConfigurationError(
                f"Update of {type} requires an id",
                operation=f"{store.value}.update",
                params=fields,
            )
        record = await self._call(store, "update", type, fields)
        if record is None:
            raise RemoteError(
                f"{store.value}.update returned no record",
                operation=f"{store.value}.update",
                params=fields,
            )
        return record

    async def _delete(self, store: Store, type: str, record_id: str | None) -> bool:
        if record_id is None:
            raise ConfigurationError(f"Delete of {type} requires an id", operation=f"{store.value}.delete")
        deleted = await self._call(store, "delete", type, record_id)
        if not deleted:
            logger.warning("sync.delete_missing", store=store.value, type=type, id=record_id)
        return bool(deleted)

    # ── Helpers ────────────────────────────────────────────────────────────

    @staticmethod
    def _outcome(
        event: SyncEvent,
        status: OutcomeStatus,
        mapped_type: MappedType | None = None,
        *,
        target_id: str | None = None,
        applied_fields: list[str] | None = None,
        errors: list[str] | None = None,
        reason: str | None = None,
    ) -> SyncOutcome:
        return SyncOutcome(
            status=status,
            store=event.store,
            mapped_type=mapped_type.key if mapped_type else None,
            source_id=event.entity_id,
            target_id=target_id,
            applied_fields=applied_fields or [],
            errors=errors or [],
            reason=reason,
        )
