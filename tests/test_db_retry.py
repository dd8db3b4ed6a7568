"""
Tests for transient database error handling.

The retry helpers matter where the store uses them: a conditional update is
re-run as a whole transaction, so the mutation function sees a fresh snapshot
each time and a failed attempt leaves nothing behind.
"""

import sqlite3
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.sql.expression import Update

from api.db_retry import (
    DEFAULT_MAX_RETRIES,
    DatabaseRetryableError,
    _backoff_delay,
    fetch_one_with_retry,
    is_retryable_database_error,
)
from api.enums import VideoStatus
from api.errors import DuplicateExternalIdError, InvalidInputError, VideoNotFoundError
from api.metrics import DB_QUERY_RETRIES_TOTAL
from api.video_store import VideoStore, video_store


@pytest.fixture
def no_backoff():
    with patch("api.db_retry.asyncio.sleep", new_callable=AsyncMock) as sleep_mock:
        yield sleep_mock


class FlakyDatabase:
    """Wraps the test database and fails the next UPDATE statements with the given errors."""

    def __init__(self, db, update_failures):
        self._db = db
        self.url = db.url
        self.update_failures = list(update_failures)

    def transaction(self):
        return self._db.transaction()

    async def fetch_one(self, query):
        return await self._db.fetch_one(query)

    async def execute(self, query):
        if isinstance(query, Update) and self.update_failures:
            raise self.update_failures.pop(0)
        return await self._db.execute(query)


class TestConditionalUpdateRetries:
    """execute_with_retry as used by VideoStore.conditional_update()."""

    @pytest.mark.asyncio
    async def test_locked_database_reruns_mutation(self, db, uploading_video, read_video, no_backoff):
        calls = []

        def mutation(current):
            calls.append(current.version)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            return {"status": VideoStatus.PROCESSING}

        result = await video_store.conditional_update(uploading_video["external_id"], mutation)

        assert calls == [0, 0]
        assert result.written is True
        assert read_video(uploading_video["external_id"])["version"] == 1
        assert no_backoff.await_count == 1

    @pytest.mark.asyncio
    async def test_deadlock_on_write_rolls_back_and_retries(self, db, uploading_video, read_video, no_backoff):
        store = VideoStore(FlakyDatabase(db, [Exception("deadlock detected")]))
        snapshots = []

        def mutation(current):
            snapshots.append((current.status, current.version))
            return {"title": "Renamed"}

        result = await store.conditional_update(uploading_video["external_id"], mutation)

        # The second attempt saw the row exactly as before the failed one
        assert snapshots == [(VideoStatus.UPLOADING, 0), (VideoStatus.UPLOADING, 0)]
        assert result.record.version == 1
        row = read_video(uploading_video["external_id"])
        assert (row["title"], row["version"]) == ("Renamed", 1)

    @pytest.mark.asyncio
    async def test_unknown_video_not_retried(self, db, no_backoff):
        mutation_calls = []

        with pytest.raises(VideoNotFoundError):
            await video_store.conditional_update("missing", lambda current: mutation_calls.append(current))

        assert mutation_calls == []
        no_backoff.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_illegal_change_not_retried(self, db, uploading_video, no_backoff):
        calls = []

        def mutation(current):
            calls.append(current)
            return {"owner_id": "someone_else"}

        with pytest.raises(InvalidInputError):
            await video_store.conditional_update(uploading_video["external_id"], mutation)

        assert len(calls) == 1
        no_backoff.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exhausted_retries_leave_row_untouched(self, db, uploading_video, read_video, no_backoff):
        store = VideoStore(FlakyDatabase(db, [Exception("could not serialize access")] * (DEFAULT_MAX_RETRIES + 1)))

        with pytest.raises(DatabaseRetryableError, match=f"after {DEFAULT_MAX_RETRIES + 1} attempts"):
            await store.conditional_update(uploading_video["external_id"], lambda current: {"title": "Never"})

        row = read_video(uploading_video["external_id"])
        assert (row["title"], row["version"]) == ("Test Video", 0)
        assert no_backoff.await_count == DEFAULT_MAX_RETRIES
        assert len(store._key_locks) == 0

    @pytest.mark.asyncio
    async def test_retries_counted(self, db, uploading_video, no_backoff):
        store = VideoStore(FlakyDatabase(db, [Exception("deadlock detected")] * 2))
        before = DB_QUERY_RETRIES_TOTAL._value.get()

        await store.conditional_update(uploading_video["external_id"], lambda current: {"title": "Renamed"})

        assert DB_QUERY_RETRIES_TOTAL._value.get() == before + 2


class TestCreateRetries:
    @pytest.mark.asyncio
    async def test_duplicate_is_reported_not_retried(self, db, uploading_video, no_backoff):
        with pytest.raises(DuplicateExternalIdError):
            await video_store.create(external_id=uploading_video["external_id"], owner_id="u", title="t")

        no_backoff.assert_not_awaited()


class TestFetchOneWithRetry:
    @pytest.mark.asyncio
    async def test_slow_query_logged(self, db, uploading_video, caplog):
        from api.database import videos

        query = videos.select().where(videos.c.external_id == uploading_video["external_id"])
        with patch("api.db_retry.SLOW_QUERY_THRESHOLD", 0.0):
            with caplog.at_level("WARNING", logger="api.db_retry"):
                row = await fetch_one_with_retry(query, db=db)

        assert row is not None
        assert "Slow query (" in caplog.text
        assert "FROM videos" in caplog.text


class TestClassification:
    """Which driver errors count as transient."""

    @pytest.mark.parametrize(
        "exc",
        [
            sqlite3.OperationalError("database is locked"),
            sqlite3.OperationalError("database table is locked"),
            Exception("SQLITE_BUSY"),
            Exception("deadlock detected"),
            Exception("could not serialize access due to concurrent update"),
            Exception("canceling statement due to lock timeout"),
            Exception("server closed the connection unexpectedly"),
        ],
    )
    def test_transient(self, exc):
        assert is_retryable_database_error(exc) is True

    @pytest.mark.parametrize(
        "exc",
        [
            sqlite3.OperationalError("no such table: videos"),
            sqlite3.IntegrityError("UNIQUE constraint failed: videos.external_id"),
            Exception("duplicate key value violates unique constraint"),
            VideoNotFoundError("guid-1"),
        ],
    )
    def test_permanent(self, exc):
        assert is_retryable_database_error(exc) is False

    @pytest.mark.parametrize("sqlstate, expected", [("40P01", True), ("40001", True), ("23505", False)])
    def test_sqlstate(self, sqlstate, expected):
        exc = Exception("driver error")
        exc.sqlstate = sqlstate
        assert is_retryable_database_error(exc) is expected

    def test_wrapped_driver_error(self):
        wrapper = RuntimeError("query failed")
        wrapper.__cause__ = sqlite3.OperationalError("database is locked")
        assert is_retryable_database_error(wrapper) is True


class TestBackoffDelay:
    @pytest.mark.parametrize("attempt, expected", [(0, 0.1), (1, 0.2), (2, 0.4), (4, 1.6), (5, 2.0), (9, 2.0)])
    def test_doubles_up_to_cap(self, attempt, expected):
        with patch("api.db_retry.random.random", return_value=0.5):
            assert _backoff_delay(attempt, 0.1, 2.0) == pytest.approx(expected)

    def test_jitter_bounded(self):
        with patch("api.db_retry.random.random", return_value=1.0):
            assert _backoff_delay(0, 1.0, 2.0) == pytest.approx(1.25)
        with patch("api.db_retry.random.random", return_value=0.0):
            assert _backoff_delay(0, 1.0, 2.0) == pytest.approx(0.75)


class TestRetryableErrorOverHttp:
    """Exhausted retries surface as 503 with Retry-After."""

    def test_api_returns_503(self, client, owner_headers):
        with patch(
            "api.ingest_api.video_store.find_visible",
            side_effect=DatabaseRetryableError("Database locked"),
        ):
            response = client.get("/api/videos/some-guid", headers=owner_headers)

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "5"
        assert "database" in response.json()["detail"].lower()
