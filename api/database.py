import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL)
metadata = sa.MetaData()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_video_id() -> str:
    return str(uuid.uuid4())


def is_postgresql(db: Database) -> bool:
    """Check the URL actually in use (tests may point at SQLite)."""
    return str(db.url).startswith("postgresql")


# One row per media asset. external_id is the origin's asset guid and is the
# only key the origin webhook carries.
videos = sa.Table(
    "videos",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True, default=new_video_id),
    sa.Column("external_id", sa.String(128), nullable=False, unique=True),
    sa.Column("owner_id", sa.String(128), nullable=False),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("description", sa.Text, nullable=True),
    sa.Column("thumbnail", sa.Text, nullable=True),
    sa.Column("tags", sa.JSON, nullable=True),
    sa.Column("category_id", sa.String(36), nullable=True),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('UPLOADING', 'PROCESSING', 'PUBLIC', 'FAILED')",
            name="ck_videos_status",
        ),
        nullable=False,
        default="UPLOADING",
    ),
    sa.Column("is_ready", sa.Boolean, nullable=False, default=False),
    # Bumped on every write; lets callers tell a no-op from a mutation
    sa.Column("version", sa.Integer, nullable=False, default=0),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, default=utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, default=utcnow),
    # Only public videos may be flagged ready
    sa.CheckConstraint(
        "is_ready = false OR status = 'PUBLIC'",
        name="ck_videos_ready_requires_public",
    ),
    sa.Index("ix_videos_owner_id", "owner_id"),
    sa.Index("ix_videos_category_id", "category_id"),
    sa.Index("ix_videos_status_ready", "status", "is_ready"),
    sa.Index("ix_videos_owner_status_ready", "owner_id", "status", "is_ready"),
    sa.Index("ix_videos_created_at", "created_at"),
)
