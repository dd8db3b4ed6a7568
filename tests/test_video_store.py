"""Tests for the video record store."""

import asyncio

import pytest

from api.enums import VideoStatus
from api.errors import DuplicateExternalIdError, InvalidInputError, VideoNotFoundError
from api.video_store import KeyedLock, VideoRecord, video_store


class TestCreate:
    """Tests for VideoStore.create()."""

    @pytest.mark.asyncio
    async def test_creates_uploading_record(self, db, read_video):
        record = await video_store.create(
            external_id="guid-1",
            owner_id="user_owner",
            title="My Clip",
            tags=["a", "b"],
        )

        assert record.status == VideoStatus.UPLOADING
        assert record.is_ready is False
        assert record.version == 0
        assert record.created_at.tzinfo is not None

        row = read_video("guid-1")
        assert row["owner_id"] == "user_owner"
        assert row["title"] == "My Clip"
        assert row["status"] == "UPLOADING"
        assert row["tags"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_duplicate_external_id_rejected(self, db, uploading_video):
        with pytest.raises(DuplicateExternalIdError) as exc_info:
            await video_store.create(
                external_id=uploading_video["external_id"],
                owner_id="someone_else",
                title="Copy",
            )

        assert exc_info.value.external_id == uploading_video["external_id"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"external_id": "", "owner_id": "u", "title": "t"},
            {"external_id": "g", "owner_id": "", "title": "t"},
            {"external_id": "g", "owner_id": "u", "title": ""},
        ],
    )
    async def test_required_fields(self, db, kwargs):
        with pytest.raises(InvalidInputError):
            await video_store.create(**kwargs)


class TestRead:
    """Tests for lookups by external id."""

    @pytest.mark.asyncio
    async def test_get_existing(self, db, processing_video):
        record = await video_store.get_by_external_id(processing_video["external_id"])

        assert isinstance(record, VideoRecord)
        assert record.id == processing_video["id"]
        assert record.status == VideoStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_get_missing_raises(self, db):
        with pytest.raises(VideoNotFoundError):
            await video_store.get_by_external_id("missing")

    @pytest.mark.asyncio
    async def test_find_missing_returns_none(self, db):
        assert await video_store.find_by_external_id("missing") is None

    @pytest.mark.asyncio
    async def test_naive_datetimes_become_utc(self, db, uploading_video):
        record = await video_store.get_by_external_id(uploading_video["external_id"])
        assert record.updated_at.utcoffset().total_seconds() == 0


class TestFindVisible:
    """Owners see everything; others only servable videos."""

    @pytest.mark.asyncio
    async def test_owner_sees_unready(self, db, uploading_video):
        record = await video_store.find_visible(uploading_video["external_id"], "user_owner")
        assert record is not None

    @pytest.mark.asyncio
    async def test_other_user_cannot_see_unready(self, db, public_unready_video):
        assert await video_store.find_visible(public_unready_video["external_id"], "user_other") is None

    @pytest.mark.asyncio
    async def test_anonymous_sees_servable(self, db, public_video):
        record = await video_store.find_visible(public_video["external_id"])
        assert record is not None
        assert record.is_servable

    @pytest.mark.asyncio
    async def test_anonymous_cannot_see_processing(self, db, processing_video):
        assert await video_store.find_visible(processing_video["external_id"]) is None


class TestConditionalUpdate:
    """Tests for VideoStore.conditional_update()."""

    @pytest.mark.asyncio
    async def test_writes_changes_and_bumps_version(self, db, uploading_video, read_video):
        external_id = uploading_video["external_id"]

        result = await video_store.conditional_update(
            external_id, lambda current: {"status": VideoStatus.PROCESSING}
        )

        assert result.written is True
        assert result.changes == {"status": "PROCESSING"}
        assert result.record.status == VideoStatus.PROCESSING
        assert result.record.version == 1
        row = read_video(external_id)
        assert row["status"] == "PROCESSING"
        assert row["version"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("decision", [None, {}])
    async def test_no_changes_means_no_write(self, db, uploading_video, read_video, decision):
        external_id = uploading_video["external_id"]

        result = await video_store.conditional_update(external_id, lambda current: decision)

        assert result.written is False
        assert result.record.version == 0
        assert read_video(external_id)["version"] == 0

    @pytest.mark.asyncio
    async def test_mutation_sees_current_snapshot(self, db, public_unready_video):
        seen = []

        def mutation(current):
            seen.append((current.status, current.is_ready))
            return None

        await video_store.conditional_update(public_unready_video["external_id"], mutation)

        assert seen == [(VideoStatus.PUBLIC, False)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("column", ["id", "external_id", "owner_id", "version", "created_at"])
    async def test_identity_columns_are_immutable(self, db, uploading_video, read_video, column):
        with pytest.raises(InvalidInputError):
            await video_store.conditional_update(
                uploading_video["external_id"], lambda current: {column: "changed"}
            )

        assert read_video(uploading_video["external_id"])["version"] == 0

    @pytest.mark.asyncio
    async def test_missing_record_raises(self, db):
        with pytest.raises(VideoNotFoundError):
            await video_store.conditional_update("missing", lambda current: {"title": "x"})

    @pytest.mark.asyncio
    async def test_concurrent_updates_see_each_others_writes(self, db, uploading_video, read_video):
        """Each mutation reads the previous one's result; no update is lost."""
        external_id = uploading_video["external_id"]

        def append_tag(tag):
            def mutation(current):
                return {"tags": current.tags + [tag]}

            return mutation

        await asyncio.gather(*(video_store.conditional_update(external_id, append_tag(f"t{i}")) for i in range(5)))

        row = read_video(external_id)
        assert sorted(row["tags"]) == ["t0", "t1", "t2", "t3", "t4"]
        assert row["version"] == 5


class TestKeyedLock:
    """Tests for the per-key lock registry."""

    @pytest.mark.asyncio
    async def test_lock_removed_when_idle(self):
        locks = KeyedLock()

        async with locks.hold("a"):
            assert len(locks) == 1

        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold("same"):
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(worker("one"), worker("two"))

        assert order in (
            ["one-start", "one-end", "two-start", "two-end"],
            ["two-start", "two-end", "one-start", "one-end"],
        )
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        locks = KeyedLock()

        async with locks.hold("a"):
            # Would deadlock if keys shared a lock
            await asyncio.wait_for(_enter(locks, "b"), timeout=1)

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        locks = KeyedLock()

        with pytest.raises(RuntimeError):
            async with locks.hold("a"):
                raise RuntimeError("boom")

        assert len(locks) == 0


async def _enter(locks, key):
    async with locks.hold(key):
        return True
