"""Sync service factory.

Wires configuration, logging, persistence and the sync components into a
running SyncOrchestrator for a pair of store adapters, and subscribes the
orchestrator to adapters that publish change events.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import structlog

from src.crmsync.config import Settings, get_settings
from src.crmsync.core.database import close_db, get_session, init_db
from src.crmsync.core.logging import configure_structlog
from src.crmsync.sync.attachments import AttachmentRepository, AttachmentService
from src.crmsync.sync.batch import BatchSyncRunner, SyncOffsetRepository
from src.crmsync.sync.identity import EntityLinkRepository, IdentityMap
from src.crmsync.sync.notifier import ChangeNotifier
from src.crmsync.sync.orchestrator import SyncOrchestrator
from src.crmsync.sync.ports import StorePort
from src.crmsync.sync.registry import FieldMappingRegistry
from src.crmsync.sync.schemas import MappingConfig
from src.crmsync.sync.transcoder import ValueTranscoder

logger = structlog.get_logger(__name__)


@dataclass
class SyncService:
    """The assembled sync components."""

    orchestrator: SyncOrchestrator
    batch: BatchSyncRunner
    identity: IdentityMap


def build_sync_service(
    store_a: StorePort,
    store_b: StorePort,
    config: MappingConfig | None = None,
    settings: Settings | None = None,
    session_factory=get_session,
) -> SyncService:
    """Assemble the sync components for two store adapters.

    Adapters exposing ``subscribe(listener)`` get the orchestrator's
    handle_event registered as their change listener.
    """
    settings = settings or get_settings()
    config = config if config is not None else settings.load_mapping_config()

    notifier = ChangeNotifier()
    registry = FieldMappingRegistry(config)
    attachments = AttachmentService(
        AttachmentRepository(session_factory),
        storage_dir=settings.ATTACHMENT_STORAGE_DIR,
        upload_dir=settings.STORE_A_UPLOAD_DIR,
        url_marker=settings.STORE_A_IMAGE_URL_MARKER,
    )
    transcoder = ValueTranscoder(registry, attachments=attachments, notifier=notifier)
    identity = IdentityMap(EntityLinkRepository(session_factory))
    orchestrator = SyncOrchestrator(
        config,
        registry,
        transcoder,
        identity,
        store_a,
        store_b,
        notifier=notifier,
        settings=settings,
    )

    for store in (store_a, store_b):
        subscribe = getattr(store, "subscribe", None)
        if callable(subscribe):
            subscribe(orchestrator.handle_event)

    batch = BatchSyncRunner(orchestrator, SyncOffsetRepository(session_factory), settings.SYNC_CHUNK_SIZE)
    logger.info(
        "sync_service.built",
        mapped_types=len(config.mapped_types),
        custom_fields=len(config.custom_fields),
    )
    return SyncService(orchestrator=orchestrator, batch=batch, identity=identity)


@asynccontextmanager
async def sync_service(
    store_a: StorePort,
    store_b: StorePort,
    config: MappingConfig | None = None,
    settings: Settings | None = None,
) -> AsyncGenerator[SyncService, None]:
    """Service lifespan: configure logging and create tables on entry, close the DB on exit."""
    configure_structlog()
    await init_db()
    try:
        yield build_sync_service(store_a, store_b, config=config, settings=settings)
    finally:
        await close_db()
