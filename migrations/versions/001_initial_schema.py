"""initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

Creates the videos table: one row per media asset, keyed for lifecycle
operations by the origin's asset id (external_id).
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the videos table with its constraints and indexes."""
    op.create_table(
        "videos",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("external_id", sa.String(128), nullable=False),
        sa.Column("owner_id", sa.String(128), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("thumbnail", sa.Text, nullable=True),
        sa.Column("tags", sa.JSON, nullable=True),
        sa.Column("category_id", sa.String(36), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="UPLOADING"),
        sa.Column("is_ready", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("external_id", name="uq_videos_external_id"),
        sa.CheckConstraint(
            "status IN ('UPLOADING', 'PROCESSING', 'PUBLIC', 'FAILED')",
            name="ck_videos_status",
        ),
        sa.CheckConstraint(
            "is_ready = false OR status = 'PUBLIC'",
            name="ck_videos_ready_requires_public",
        ),
    )

    op.create_index("ix_videos_owner_id", "videos", ["owner_id"])
    op.create_index("ix_videos_category_id", "videos", ["category_id"])
    op.create_index("ix_videos_status_ready", "videos", ["status", "is_ready"])
    op.create_index("ix_videos_owner_status_ready", "videos", ["owner_id", "status", "is_ready"])
    op.create_index("ix_videos_created_at", "videos", ["created_at"])


def downgrade() -> None:
    """Drop the videos table."""
    op.drop_index("ix_videos_created_at", table_name="videos")
    op.drop_index("ix_videos_owner_status_ready", table_name="videos")
    op.drop_index("ix_videos_status_ready", table_name="videos")
    op.drop_index("ix_videos_category_id", table_name="videos")
    op.drop_index("ix_videos_owner_id", table_name="videos")
    op.drop_table("videos")
