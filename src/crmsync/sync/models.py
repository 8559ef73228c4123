"""Sync persistence models -- bookkeeping tables owned by the sync core.

Three SQLAlchemy models using SyncBase:
- EntityLinkModel: 1:1 link between a Store A record and a Store B record
  per mapped type, unique on both sides
- SyncOffsetModel: Resumable batch offsets per (mapped type, direction)
- AttachmentModel: Local attachment files and their Store A counterparts
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from src.crmsync.core.database import SyncBase


class EntityLinkModel(SyncBase):
    """Persisted identity link for one mapped type.

    A strict 1:1 relation: no two rows of a mapped type share a Store A id,
    and no two share a Store B id.
    """

    __tablename__ = "entity_links"
    __table_args__ = (
        UniqueConstraint("mapped_type", "a_id", name="uq_entity_link_type_a"),
        UniqueConstraint("mapped_type", "b_id", name="uq_entity_link_type_b"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mapped_type: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    a_id: Mapped[str] = mapped_column(String(64), nullable=False)
    b_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class SyncOffsetModel(SyncBase):
    """Next offset of an in-progress batch sync.

    A row exists only while a batch is running; it is removed when the
    batch completes.
    """

    __tablename__ = "sync_offsets"
    __table_args__ = (
        UniqueConstraint("type_key", "direction", name="uq_sync_offset_type_direction"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type_key: Mapped[str] = mapped_column(String(200), nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    offset: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class AttachmentModel(SyncBase):
    """Store B attachment copied into local storage.

    ``source_url`` is the Store A reference the file was imported from.
    ``store_a_file`` is the path the attachment was last exported to in
    Store A, and ``exported_from`` the local file that export was made from.
    """

    __tablename__ = "attachments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False, default="application/octet-stream")
    source_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    store_a_file: Mapped[str | None] = mapped_column(Text, nullable=True)
    exported_from: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
