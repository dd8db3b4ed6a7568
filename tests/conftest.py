"""
Pytest fixtures for Clipstream tests.
Provides a test database, the API test client, and sample records.

Uses a temporary SQLite database so no external services are needed. The
schema is created and dropped around every test.
"""

import os
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path

import pytest
import sqlalchemy as sa

# Configure the environment BEFORE importing config (module-level constants)
_test_temp_dir = tempfile.mkdtemp(prefix="clipstream-tests-")
TEST_DB_PATH = Path(_test_temp_dir) / "test.db"
TEST_DB_URL = f"sqlite:///{TEST_DB_PATH}"

TEST_LIBRARY_ID = "12345"
TEST_API_KEY = "test-stream-api-key"
TEST_WEBHOOK_KEY = "test-webhook-key-0123456789"
TEST_ADMIN_SECRET = "test-admin-secret-0123456789"

os.environ["CLIPSTREAM_TEST_MODE"] = "1"
os.environ["CLIPSTREAM_DATABASE_URL"] = TEST_DB_URL
os.environ["CLIPSTREAM_ORIGIN_LIBRARY_ID"] = TEST_LIBRARY_ID
os.environ["CLIPSTREAM_ORIGIN_API_KEY"] = TEST_API_KEY
os.environ["CLIPSTREAM_ORIGIN_WEBHOOK_KEY"] = TEST_WEBHOOK_KEY
os.environ["CLIPSTREAM_ORIGIN_API_URL"] = "https://origin.test"
os.environ["CLIPSTREAM_ORIGIN_STORAGE_ZONE"] = "clipstream-test"
os.environ["CLIPSTREAM_ORIGIN_STORAGE_API_KEY"] = "test-storage-key"
os.environ["CLIPSTREAM_ORIGIN_STORAGE_URL"] = "https://cdn.origin.test"
os.environ["CLIPSTREAM_ADMIN_API_SECRET"] = TEST_ADMIN_SECRET
os.environ["CLIPSTREAM_RATE_LIMIT_ENABLED"] = "false"
os.environ["CLIPSTREAM_REDIS_URL"] = ""
os.environ["CLIPSTREAM_AUDIT_LOG_PATH"] = str(Path(_test_temp_dir) / "audit.log")

from api.database import database, metadata, videos  # noqa: E402
from api.enums import VideoStatus  # noqa: E402

OWNER_ID = "user_owner"
OTHER_USER_ID = "user_other"


def _sync_engine() -> sa.engine.Engine:
    return sa.create_engine(TEST_DB_URL)


@pytest.fixture(autouse=True)
def test_schema():
    """Create all tables before each test and drop them afterwards."""
    engine = _sync_engine()
    metadata.create_all(engine)
    yield engine
    metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
async def db():
    """The application database, connected for async store/guard tests."""
    await database.connect()
    yield database
    await database.disconnect()


def _insert_video(
    engine: sa.engine.Engine,
    external_id: str = None,
    owner_id: str = OWNER_ID,
    title: str = "Test Video",
    status: VideoStatus = VideoStatus.UPLOADING,
    is_ready: bool = False,
    **extra,
) -> dict:
    """Insert a video row synchronously and return its values."""
    now = datetime.now(timezone.utc)
    values = {
        "id": str(uuid.uuid4()),
        "external_id": external_id or str(uuid.uuid4()),
        "owner_id": owner_id,
        "title": title,
        "description": None,
        "thumbnail": None,
        "tags": [],
        "category_id": None,
        "status": VideoStatus(status).value,
        "is_ready": is_ready,
        "version": 0,
        "created_at": now,
        "updated_at": now,
    }
    values.update(extra)
    with engine.begin() as conn:
        conn.execute(videos.insert().values(**values))
    return values


def _fetch_video(engine: sa.engine.Engine, external_id: str) -> dict:
    """Read a video row synchronously."""
    with engine.connect() as conn:
        row = conn.execute(videos.select().where(videos.c.external_id == external_id)).mappings().first()
    return dict(row) if row else None


@pytest.fixture
def make_video(test_schema):
    """Factory inserting a video row; keyword arguments override column values."""

    def _make(**kwargs) -> dict:
        return _insert_video(test_schema, **kwargs)

    return _make


@pytest.fixture
def read_video(test_schema):
    """Read the current row for an external id (or None)."""

    def _read(external_id: str) -> dict:
        return _fetch_video(test_schema, external_id)

    return _read


@pytest.fixture
def uploading_video(test_schema) -> dict:
    return _insert_video(test_schema, status=VideoStatus.UPLOADING)


@pytest.fixture
def processing_video(test_schema) -> dict:
    return _insert_video(test_schema, status=VideoStatus.PROCESSING)


@pytest.fixture
def public_video(test_schema) -> dict:
    return _insert_video(test_schema, status=VideoStatus.PUBLIC, is_ready=True)


@pytest.fixture
def public_unready_video(test_schema) -> dict:
    return _insert_video(test_schema, status=VideoStatus.PUBLIC, is_ready=False)


class FakeOriginClient:
    """Stands in for OriginClient: hands out predictable asset ids and records thumbnails."""

    storage_url = "https://cdn.origin.test"

    def __init__(self):
        self.created = []
        self.thumbnails = []

    async def create_video(self, title: str) -> str:
        guid = f"guid-{len(self.created) + 1}-{uuid.uuid4().hex[:8]}"
        self.created.append((title, guid))
        return guid

    async def replace_thumbnail(self, external_id, filename, data, previous_url=None):
        from api.origin_client import ThumbnailUpload

        self.thumbnails.append((external_id, filename, data, previous_url))
        path = f"{external_id}/{filename}"
        return ThumbnailUpload(path=path, url=f"{self.storage_url}/{path}", previous_deleted=previous_url is not None)

    async def close(self) -> None:
        pass


@pytest.fixture
def published_events(monkeypatch):
    """Capture video.published notifications instead of sending them to Redis."""
    events = []

    async def fake_publish(**kwargs):
        events.append(kwargs)
        return True

    monkeypatch.setattr("api.video_state.Publisher.publish_video_published", fake_publish)
    return events


@pytest.fixture
def client(test_schema, published_events):
    """
    API test client. The app manages its own database connection through its
    lifespan; the origin client is replaced with a fake.
    """
    from fastapi.testclient import TestClient

    from api.ingest_api import app, get_origin_client

    fake_origin = FakeOriginClient()
    app.dependency_overrides[get_origin_client] = lambda: fake_origin

    with TestClient(app, raise_server_exceptions=False) as test_client:
        test_client.fake_origin = fake_origin
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def owner_headers() -> dict:
    return {"X-User-Id": OWNER_ID}


@pytest.fixture
def other_headers() -> dict:
    return {"X-User-Id": OTHER_USER_ID}


@pytest.fixture
def admin_headers() -> dict:
    return {"X-Admin-Secret": TEST_ADMIN_SECRET}
