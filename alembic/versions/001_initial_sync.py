"""Initial sync bookkeeping tables: entity links, batch offsets, attachments.

Revision ID: 001_initial_sync
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_initial_sync"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 1:1 links between counterpart records, unique on both sides per mapped type
    op.create_table(
        "entity_links",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("mapped_type", sa.String(200), nullable=False),
        sa.Column("a_id", sa.String(64), nullable=False),
        sa.Column("b_id", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("mapped_type", "a_id", name="uq_entity_link_type_a"),
        sa.UniqueConstraint("mapped_type", "b_id", name="uq_entity_link_type_b"),
    )
    op.create_index("ix_entity_links_mapped_type", "entity_links", ["mapped_type"])

    op.create_table(
        "sync_offsets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("type_key", sa.String(200), nullable=False),
        sa.Column("direction", sa.String(16), nullable=False),
        sa.Column("offset", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("type_key", "direction", name="uq_sync_offset_type_direction"),
    )

    op.create_table(
        "attachments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("file_path", sa.Text(), nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("mime_type", sa.String(100), nullable=False, server_default="application/octet-stream"),
        sa.Column("source_url", sa.Text(), nullable=True),
        sa.Column("store_a_file", sa.Text(), nullable=True),
        sa.Column("exported_from", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_attachments_content_hash", "attachments", ["content_hash"])


def downgrade() -> None:
    op.drop_index("ix_attachments_content_hash", table_name="attachments")
    op.drop_table("attachments")
    op.drop_table("sync_offsets")
    op.drop_index("ix_entity_links_mapped_type", table_name="entity_links")
    op.drop_table("entity_links")
