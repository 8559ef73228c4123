"""Bidirectional sync between a CRM store (Store A) and a content store (Store B).

Provides the sync core, which only talks to the stores through StorePort:
- FieldMappingRegistry: resolves Store B selectors and Store A codes to field kinds
- ValueTranscoder: converts field values between the two stores' encodings
- IdentityMap: persisted 1:1 links between counterpart records
- Reconciler functions: minimal create/update/activate/deactivate/delete plans
- SyncOrchestrator: event routing, recursion guard, create-on-demand, batch chunks
- BatchSyncRunner: resumable whole-type sync on top of sync_chunk()

Architecture: every event runs in an explicit SyncContext owning the
recursion guard, do-not-sync flags and lookup memo for that pass.
"""

from src.crmsync.sync.attachments import AttachmentRepository, AttachmentService
from src.crmsync.sync.batch import BatchSyncRunner, SyncOffsetRepository
from src.crmsync.sync.context import SyncContext, get_current_context
from src.crmsync.sync.families import SubRecordProvider, default_providers
from src.crmsync.sync.identity import EntityLinkRepository, IdentityMap
from src.crmsync.sync.memory import MemoryStore
from src.crmsync.sync.notifier import CUSTOM_FIELD_UNLINKED, RECORD_SYNCED, ChangeNotifier
from src.crmsync.sync.orchestrator import SyncOrchestrator
from src.crmsync.sync.ports import StoreError, StorePort, TransientStoreError
from src.crmsync.sync.reconciler import (
    reconcile_by_id,
    reconcile_flag,
    reconcile_primary_family,
    reconcile_relationships,
)
from src.crmsync.sync.registry import FieldMappingRegistry
from src.crmsync.sync.schemas import (
    ChunkResult,
    FieldMapping,
    MappedType,
    MappingConfig,
    Store,
    SyncEvent,
    SyncOutcome,
)
from src.crmsync.sync.transcoder import ValueTranscoder

__all__ = [
    "AttachmentRepository",
    "AttachmentService",
    "BatchSyncRunner",
    "CUSTOM_FIELD_UNLINKED",
    "ChangeNotifier",
    "ChunkResult",
    "EntityLinkRepository",
    "FieldMapping",
    "FieldMappingRegistry",
    "IdentityMap",
    "MappedType",
    "MappingConfig",
    "MemoryStore",
    "RECORD_SYNCED",
    "Store",
    "StoreError",
    "StorePort",
    "SubRecordProvider",
    "SyncContext",
    "SyncEvent",
    "SyncOffsetRepository",
    "SyncOrchestrator",
    "SyncOutcome",
    "TransientStoreError",
    "ValueTranscoder",
    "default_providers",
    "get_current_context",
    "reconcile_by_id",
    "reconcile_flag",
    "reconcile_primary_family",
    "reconcile_relationships",
]
