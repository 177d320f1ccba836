"""
Pytest fixtures for MediaStore tests.

Tests run against a throwaway SQLite database per test (schema created from
the SQLAlchemy metadata). Redis is never contacted: the event publisher and
the job queue are replaced with mocks.
"""

import os
import tempfile
from pathlib import Path
from typing import AsyncGenerator
from unittest.mock import AsyncMock, patch

import pytest
import sqlalchemy as sa
from databases import Database

# Set up the environment BEFORE importing config
_test_temp_dir = tempfile.mkdtemp()
os.environ.setdefault("MEDIASTORE_CRYPTO_SECRET_KEY", "test-crypto-secret")
os.environ.setdefault("MEDIASTORE_DATABASE_URL", f"sqlite:///{_test_temp_dir}/mediastore.db")
os.environ.setdefault("MEDIASTORE_REDIS_URL", "")

from api.common import utcnow  # noqa: E402
from api.database import episodes, media, metadata  # noqa: E402
from api.enums import StorageKind, StorageRole  # noqa: E402
from api.ids import new_id  # noqa: E402
from api.models import StorageBackend  # noqa: E402
from api.registry import StorageRegistry  # noqa: E402
from api.role_cache import RoleCache  # noqa: E402
from api.schemas import BackendCreate  # noqa: E402
from api.vault import CredentialVault  # noqa: E402


def _create_tables(db_url: str) -> None:
    """Create all tables in the test database."""
    engine = sa.create_engine(db_url)
    metadata.create_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_db_url(tmp_path: Path) -> str:
    db_url = f"sqlite:///{tmp_path / 'test.db'}"
    _create_tables(db_url)
    return db_url


@pytest.fixture(scope="function")
async def test_database(test_db_url: str) -> AsyncGenerator[Database, None]:
    """Create a fresh test database for each test."""
    database = Database(test_db_url)
    await database.connect()

    yield database

    await database.disconnect()


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault("test-crypto-secret")


@pytest.fixture
def role_cache() -> RoleCache:
    return RoleCache(ttl=3600)


@pytest.fixture
def mock_publisher():
    """Replace every outbound event with an AsyncMock (returns True)."""
    with patch("api.pubsub.Publisher") as publisher:
        for name in (
            "publish_rendition_added",
            "publish_source_ready",
            "publish_processing_succeeded",
            "publish_processing_failed",
            "publish_role_cache_invalidated",
        ):
            setattr(publisher, name, AsyncMock(return_value=True))
        with patch("api.registry.Publisher", publisher), patch("api.orchestrator.Publisher", publisher):
            yield publisher


@pytest.fixture
def mock_job_queue():
    queue = AsyncMock()
    queue.submit_batch = AsyncMock(return_value=None)
    queue.request_cancel = AsyncMock(return_value=True)
    return queue


@pytest.fixture
async def registry(test_database, vault, role_cache, mock_publisher) -> StorageRegistry:
    return StorageRegistry(test_database, vault=vault, role_cache=role_cache)


@pytest.fixture
def make_backend(registry):
    """Register a backend through the registry."""

    async def _make(
        name: str = "drive-1",
        kind: StorageKind = StorageKind.GOOGLE_DRIVE,
        role: StorageRole = StorageRole.SOURCE,
        **kwargs,
    ) -> StorageBackend:
        fields = {
            "client_id": "client-id",
            "client_secret": "client-secret",
            "refresh_token": "refresh-token",
        }
        if kind == StorageKind.CLOUDFLARE_R2:
            fields.update(refresh_token=None, api_url="https://account.r2.example.com", folder_id="bucket")
        fields.update(kwargs)
        return await registry.register_backend(BackendCreate(name=name, kind=kind, role=role, **fields))

    return _make


@pytest.fixture
def make_media(test_database):
    """Insert a movie or show row."""

    async def _make(kind: str = "movie", external_stream_url=None) -> int:
        media_id = new_id()
        now = utcnow()
        await test_database.execute(
            media.insert().values(
                id=media_id,
                title=f"Test {kind} {media_id}",
                kind=kind,
                source_file_id=None,
                source_status="pending",
                public_status="done" if external_stream_url else "pending",
                external_stream_url=external_stream_url,
                public_episode_count=0,
                created_at=now,
                updated_at=now,
            )
        )
        return media_id

    return _make


@pytest.fixture
def make_episode(test_database):
    """Insert an episode row under a show."""

    async def _make(media_id: int, number: int = 1) -> int:
        episode_id = new_id()
        now = utcnow()
        await test_database.execute(
            episodes.insert().values(
                id=episode_id,
                media_id=media_id,
                episode_number=number,
                name=f"Episode {number}",
                source_file_id=None,
                source_status="pending",
                public_status="pending",
                external_stream_url=None,
                created_at=now,
                updated_at=now,
            )
        )
        return episode_id

    return _make
