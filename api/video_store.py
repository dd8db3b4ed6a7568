"""
Video record store - durable lifecycle state for media assets.

All lifecycle mutations go through VideoStore.conditional_update(), which reads
the current row, hands an immutable snapshot to a mutation function, and writes
whatever that function decides, atomically per external id:

    in-process lock keyed by external_id
        -> database transaction
            -> SELECT ... FOR UPDATE (PostgreSQL row lock; SQLite serializes
               writers at the database level)
            -> mutation_fn(snapshot) -> changes or None
            -> single UPDATE (changes + updated_at + version bump)

Two concurrent conditional updates for the same external id therefore never
both act on the same stale snapshot. There is deliberately no blind update.

Usage:
    from api.video_store import video_store

    record = await video_store.get_by_external_id("3f1c...")
    result = await video_store.conditional_update(
        "3f1c...", lambda current: {"title": "New"} if current.title != "New" else None
    )
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional

import sqlalchemy as sa
from databases import Database

from api.common import ensure_utc
from api.database import database, is_postgresql, new_video_id, utcnow, videos
from api.db_retry import execute_with_retry, fetch_one_with_retry
from api.enums import VideoStatus
from api.errors import DuplicateExternalIdError, InvalidInputError, VideoNotFoundError

logger = logging.getLogger(__name__)

# Columns a mutation function may change. Identity columns are immutable.
MUTABLE_FIELDS = frozenset(
    {"title", "description", "thumbnail", "tags", "category_id", "status", "is_ready"}
)

MutationFn = Callable[["VideoRecord"], Optional[Dict[str, Any]]]


def row_to_mapping(row) -> Dict[str, Any]:
    """Column name -> value for a videos row, with type processing applied by the driver layer."""
    return {column.name: row[column.name] for column in videos.columns}


def servable_clause():
    """SQL condition matching records that may be served to other users."""
    return sa.and_(videos.c.status == VideoStatus.PUBLIC.value, videos.c.is_ready.is_(True))


@dataclass(frozen=True)
class VideoRecord:
    """Immutable snapshot of one row of the videos table."""

    id: str
    external_id: str
    owner_id: str
    title: str
    status: VideoStatus
    is_ready: bool
    description: Optional[str] = None
    thumbnail: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    category_id: Optional[str] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "VideoRecord":
        """Create a VideoRecord from a database row mapping.

        Datetimes are normalized to UTC (SQLite returns naive values).
        """
        return cls(
            id=row["id"],
            external_id=row["external_id"],
            owner_id=row["owner_id"],
            title=row["title"],
            status=VideoStatus(row["status"]),
            is_ready=bool(row["is_ready"]),
            description=row.get("description"),
            thumbnail=row.get("thumbnail"),
            tags=list(row.get("tags") or []),
            category_id=row.get("category_id"),
            version=row.get("version") or 0,
            created_at=ensure_utc(row.get("created_at")),
            updated_at=ensure_utc(row.get("updated_at")),
        )

    @property
    def is_servable(self) -> bool:
        """Only public, ready videos may be served to other users."""
        return self.status == VideoStatus.PUBLIC and self.is_ready

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "owner_id": self.owner_id,
            "title": self.title,
            "description": self.description,
            "thumbnail": self.thumbnail,
            "tags": list(self.tags),
            "category_id": self.category_id,
            "status": self.status.value,
            "is_ready": self.is_ready,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class ConditionalUpdateResult:
    """Outcome of a conditional update: the resulting record and whether a write happened."""

    record: VideoRecord
    written: bool
    changes: Dict[str, Any] = field(default_factory=dict)


class KeyedLock:
    """
    Per-key asyncio locks, created on demand and dropped when idle.

    Serializes coroutines in this process that touch the same key; different
    keys never wait on each other.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def _is_unique_violation(exc: BaseException) -> bool:
    text = str(exc).lower()
    if "unique" in text or "duplicate key" in text:
        return True
    if getattr(exc, "sqlstate", None) == "23505":
        return True
    if exc.__cause__ is not None:
        return _is_unique_violation(exc.__cause__)
    return False


class VideoStore:
    """Data access for video records: create, read by external id, conditional update."""

    def __init__(self, db: Database) -> None:
        self.db = db
        self._key_locks = KeyedLock()

    async def create(
        self,
        external_id: str,
        owner_id: str,
        title: str,
        description: Optional[str] = None,
        thumbnail: Optional[str] = None,
        tags: Optional[List[str]] = None,
        category_id: Optional[str] = None,
    ) -> VideoRecord:
        """
        Insert a new record in UPLOADING state.

        Raises:
            InvalidInputError: external_id, owner_id or title is empty
            DuplicateExternalIdError: a record with this external_id exists
        """
        if not external_id or not owner_id or not title:
            raise InvalidInputError("external_id, owner_id and title are required")

        now = utcnow()
        values = {
            "id": new_video_id(),
            "external_id": external_id,
            "owner_id": owner_id,
            "title": title,
            "description": description,
            "thumbnail": thumbnail,
            "tags": list(tags) if tags else [],
            "category_id": category_id,
            "status": VideoStatus.UPLOADING.value,
            "is_ready": False,
            "version": 0,
            "created_at": now,
            "updated_at": now,
        }

        try:
            await execute_with_retry(self.db.execute, videos.insert().values(**values))
        except Exception as e:
            if _is_unique_violation(e):
                raise DuplicateExternalIdError(external_id) from e
            raise

        logger.info(f"Created video record {values['id']} for external id {external_id} (owner {owner_id})")
        return VideoRecord.from_mapping(values)

    async def find_by_external_id(self, external_id: str) -> Optional[VideoRecord]:
        """Return the record for external_id, or None."""
        row = await fetch_one_with_retry(
            videos.select().where(videos.c.external_id == external_id), db=self.db
        )
        return VideoRecord.from_mapping(row_to_mapping(row)) if row else None

    async def find_visible(self, external_id: str, viewer_id: Optional[str] = None) -> Optional[VideoRecord]:
        """
        Return the record if viewer_id may see it: owners see every state,
        everyone else only servable records.
        """
        visibility = servable_clause()
        if viewer_id:
            visibility = sa.or_(videos.c.owner_id == viewer_id, visibility)
        row = await fetch_one_with_retry(
            videos.select().where(sa.and_(videos.c.external_id == external_id, visibility)),
            db=self.db,
        )
        return VideoRecord.from_mapping(row_to_mapping(row)) if row else None

    async def get_by_external_id(self, external_id: str) -> VideoRecord:
        """Return the record for external_id, raising VideoNotFoundError if absent."""
        record = await self.find_by_external_id(external_id)
        if record is None:
            raise VideoNotFoundError(external_id)
        return record

    async def conditional_update(self, external_id: str, mutation_fn: MutationFn) -> ConditionalUpdateResult:
        """
        Atomically read the record, let mutation_fn decide, and write its decision.

        mutation_fn receives the freshly read VideoRecord and returns a dict of
        column changes, or None/{} for "nothing to do". It must be a pure
        decision: it may run more than once if a transient database error
        forces the transaction to be retried.

        Raises:
            VideoNotFoundError: no record matches external_id
            InvalidInputError: mutation_fn tried to change an immutable column
        """
        async with self._key_locks.hold(external_id):
            return await execute_with_retry(self._read_decide_write, external_id, mutation_fn)

    async def _read_decide_write(self, external_id: str, mutation_fn: MutationFn) -> ConditionalUpdateResult:
        async with self.db.transaction():
            query = videos.select().where(videos.c.external_id == external_id)
            if is_postgresql(self.db):
                query = query.with_for_update()
            row = await self.db.fetch_one(query)
            if row is None:
                raise VideoNotFoundError(external_id)

            current = VideoRecord.from_mapping(row_to_mapping(row))
            changes = mutation_fn(current) or {}

            illegal = set(changes) - MUTABLE_FIELDS
            if illegal:
                raise InvalidInputError(f"Cannot modify fields: {', '.join(sorted(illegal))}")

            changes = {
                key: (value.value if isinstance(value, VideoStatus) else value)
                for key, value in changes.items()
            }
            if not changes:
                return ConditionalUpdateResult(record=current, written=False)

            values = dict(changes)
            values["updated_at"] = utcnow()
            values["version"] = current.version + 1
            await self.db.execute(
                videos.update().where(videos.c.id == current.id).values(**values)
            )

        updated = current.to_dict()
        updated.update(values)
        return ConditionalUpdateResult(
            record=VideoRecord.from_mapping(updated),
            written=True,
            changes=changes,
        )


# Module-level store bound to the application database
video_store = VideoStore(database)
