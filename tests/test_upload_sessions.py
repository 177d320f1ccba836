"""Tests for resumable upload sessions."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import sqlalchemy as sa

from api.common import utcnow
from api.database import stored_files, transcode_jobs, upload_sessions
from api.enums import PublicStatus, SourceStatus, StorageKind, StorageRole, StoredFileKind
from api.errors import (
    BackendRequestFailed,
    JobQueueUnavailable,
    MediaNotFound,
    RemoteFileNotFound,
    RoleStorageNotConfigured,
    SourceAlreadyExists,
    UploadInvalid,
    UploadSessionExpired,
    UploadSessionNotFound,
)
from api.orchestrator import TranscodeOrchestrator
from api.schemas import TranscodeOptions
from api.selector import StorageSelector
from api.upload_sessions import UploadSessionManager
from storage.base import RemoteFile, UploadTarget

USER_ID = 77


@pytest.fixture
def adapter():
    adapter = MagicMock()
    adapter.__aenter__ = AsyncMock(return_value=adapter)
    adapter.__aexit__ = AsyncMock(return_value=None)
    adapter.create_upload_session = AsyncMock(
        side_effect=lambda filename, folder, size, mime_type: UploadTarget(
            upload_url=f"https://upload.example.com/{folder}/{filename}", backend_id=0
        )
    )
    adapter.find_file = AsyncMock()
    adapter.delete_folder = AsyncMock()
    adapter.delete = AsyncMock()
    return adapter


@pytest.fixture
def manager(test_database, registry, mock_job_queue, adapter):
    factory = MagicMock(return_value=adapter)
    selector = StorageSelector(registry, adapter_factory=factory)
    orchestrator = TranscodeOrchestrator(
        test_database, registry=registry, job_queue=mock_job_queue, adapter_factory=factory, video_codecs=3
    )
    return UploadSessionManager(test_database, selector=selector, orchestrator=orchestrator)


async def _count(db, table):
    return await db.fetch_val(sa.select(sa.func.count()).select_from(table))


class TestCreateSession:
    """Tests for create_session."""

    @pytest.mark.asyncio
    async def test_creates_session_on_least_used_backend(self, manager, make_backend, make_media, adapter, registry):
        busy = await make_backend("busy")
        idle = await make_backend("idle")
        await registry.increment_used(busy.id, 5000)
        media_id = await make_media()

        response = await manager.create_session(USER_ID, "movie.mkv", 1000, "video/x-matroska", media_id=media_id)

        assert response.backend_id == str(idle.id)
        assert response.upload_url == f"https://upload.example.com/{response.session_id}/movie.mkv"
        session = await manager.get_session(int(response.session_id))
        assert session.storage_id == idle.id
        assert session.size == 1000
        assert session.expires_at - session.created_at == timedelta(hours=24)
        adapter.create_upload_session.assert_awaited_once_with(
            "movie.mkv", response.session_id, 1000, "video/x-matroska"
        )

    @pytest.mark.asyncio
    async def test_missing_media(self, manager, make_backend):
        await make_backend()
        with pytest.raises(MediaNotFound):
            await manager.create_session(USER_ID, "movie.mkv", 1000, "video/x-matroska", media_id=1)

    @pytest.mark.asyncio
    async def test_no_source_pool(self, manager, make_media):
        media_id = await make_media()
        with pytest.raises(RoleStorageNotConfigured):
            await manager.create_session(USER_ID, "movie.mkv", 1000, "video/x-matroska", media_id=media_id)

    @pytest.mark.asyncio
    async def test_image_role_session(self, manager, make_backend):
        backend = await make_backend("img", StorageKind.DROPBOX, StorageRole.SUBTITLE)

        response = await manager.create_session(
            USER_ID, "en.srt", 300, "text/plain", role=StorageRole.SUBTITLE
        )

        assert response.backend_id == str(backend.id)


class TestVerifyAndCommit:
    """Tests for verify_and_commit."""

    async def _session(self, manager, make_backend, make_media, size=1000):
        backend = await make_backend()
        media_id = await make_media()
        response = await manager.create_session(USER_ID, "movie.mkv", size, "video/x-matroska", media_id=media_id)
        return backend, media_id, int(response.session_id)

    @pytest.mark.asyncio
    async def test_matching_upload_commits_source(
        self, manager, make_backend, make_media, adapter, mock_job_queue, registry, test_database
    ):
        backend, media_id, session_id = await self._session(manager, make_backend, make_media)
        adapter.find_file.return_value = RemoteFile(remote_id="drive-file", name="movie.mkv", size=1000)

        source = await manager.verify_and_commit(session_id, "drive-file", USER_ID)

        assert source.id == session_id
        assert source.kind == StoredFileKind.SOURCE
        assert source.remote_id == "drive-file"
        assert await manager.get_session(session_id) is None
        item = await manager.orchestrator.get_item(media_id)
        assert item.source_file_id == session_id
        assert item.source_status == SourceStatus.PROCESSING
        assert item.public_status == PublicStatus.PROCESSING
        assert len(mock_job_queue.submit_batch.call_args.args[0]) == 2
        # one selection plus the committed bytes
        assert (await registry.get_backend(backend.id)).used == 1001

    @pytest.mark.asyncio
    async def test_size_mismatch_rejected(self, manager, make_backend, make_media, adapter, test_database):
        _, media_id, session_id = await self._session(manager, make_backend, make_media)
        adapter.find_file.return_value = RemoteFile(remote_id="drive-file", name="movie.mkv", size=999)

        with pytest.raises(UploadInvalid) as exc_info:
            await manager.verify_and_commit(session_id, "drive-file", USER_ID)

        assert exc_info.value.context["expected_size"] == 1000
        assert exc_info.value.context["actual_size"] == 999
        adapter.delete_folder.assert_awaited_once_with(str(session_id))
        assert await manager.get_session(session_id) is None
        assert await _count(test_database, stored_files) == 0
        assert (await manager.orchestrator.get_item(media_id)).source_file_id is None

    @pytest.mark.asyncio
    async def test_name_mismatch_rejected(self, manager, make_backend, make_media, adapter):
        _, _, session_id = await self._session(manager, make_backend, make_media)
        adapter.find_file.return_value = RemoteFile(remote_id="drive-file", name="other.mkv", size=1000)

        with pytest.raises(UploadInvalid):
            await manager.verify_and_commit(session_id, "drive-file", USER_ID)

    @pytest.mark.asyncio
    async def test_failed_folder_cleanup_still_rejects(self, manager, make_backend, make_media, adapter):
        _, _, session_id = await self._session(manager, make_backend, make_media)
        adapter.find_file.return_value = RemoteFile(remote_id="drive-file", name="movie.mkv", size=1)
        adapter.delete_folder.side_effect = BackendRequestFailed("boom")

        with pytest.raises(UploadInvalid):
            await manager.verify_and_commit(session_id, "drive-file", USER_ID)
        assert await manager.get_session(session_id) is None

    @pytest.mark.asyncio
    async def test_missing_remote_file_keeps_session(self, manager, make_backend, make_media, adapter):
        _, _, session_id = await self._session(manager, make_backend, make_media)
        adapter.find_file.side_effect = RemoteFileNotFound(remote_id="nope")

        with pytest.raises(RemoteFileNotFound):
            await manager.verify_and_commit(session_id, "nope", USER_ID)
        assert await manager.get_session(session_id) is not None

    @pytest.mark.asyncio
    async def test_other_user(self, manager, make_backend, make_media):
        _, _, session_id = await self._session(manager, make_backend, make_media)
        with pytest.raises(UploadSessionNotFound):
            await manager.verify_and_commit(session_id, "drive-file", USER_ID + 1)

    @pytest.mark.asyncio
    async def test_unknown_session(self, manager):
        with pytest.raises(UploadSessionNotFound):
            await manager.verify_and_commit(12345, "drive-file", USER_ID)

    @pytest.mark.asyncio
    async def test_expired_session(self, manager, make_backend, make_media, test_database):
        _, _, session_id = await self._session(manager, make_backend, make_media)
        await test_database.execute(
            upload_sessions.update()
            .where(upload_sessions.c.id == session_id)
            .values(expires_at=utcnow() - timedelta(minutes=1))
        )

        with pytest.raises(UploadSessionExpired):
            await manager.verify_and_commit(session_id, "drive-file", USER_ID)

    @pytest.mark.asyncio
    async def test_queue_failure_rolls_back(
        self, manager, make_backend, make_media, adapter, mock_job_queue, test_database
    ):
        _, media_id, session_id = await self._session(manager, make_backend, make_media)
        adapter.find_file.return_value = RemoteFile(remote_id="drive-file", name="movie.mkv", size=1000)
        mock_job_queue.submit_batch.side_effect = JobQueueUnavailable()

        with pytest.raises(JobQueueUnavailable):
            await manager.verify_and_commit(session_id, "drive-file", USER_ID, TranscodeOptions())

        assert await manager.get_session(session_id) is not None
        assert await _count(test_database, transcode_jobs) == 0
        assert (await manager.orchestrator.get_item(media_id)).source_file_id is None

    @pytest.mark.asyncio
    async def test_source_already_exists(self, manager, make_backend, make_media, adapter):
        await make_backend()
        media_id = await make_media()
        first = await manager.create_session(USER_ID, "movie.mkv", 1000, "video/x-matroska", media_id=media_id)
        second = await manager.create_session(USER_ID, "movie.mkv", 1000, "video/x-matroska", media_id=media_id)
        adapter.find_file.return_value = RemoteFile(remote_id="drive-file", name="movie.mkv", size=1000)
        await manager.verify_and_commit(int(first.session_id), "drive-file", USER_ID)

        with pytest.raises(SourceAlreadyExists):
            await manager.verify_and_commit(int(second.session_id), "drive-file", USER_ID)
        with pytest.raises(SourceAlreadyExists):
            await manager.create_session(USER_ID, "movie.mkv", 1000, "video/x-matroska", media_id=media_id)

    @pytest.mark.asyncio
    async def test_asset_commit(self, manager, make_backend, adapter, registry):
        backend = await make_backend("subs", StorageKind.DROPBOX, StorageRole.SUBTITLE)
        response = await manager.create_session(USER_ID, "en.srt", 300, "text/plain", role=StorageRole.SUBTITLE)
        adapter.find_file.return_value = RemoteFile(remote_id="id:srt", name="en.srt", size=300)

        asset = await manager.verify_and_commit(int(response.session_id), "id:srt", USER_ID)

        assert asset.kind == StoredFileKind.ASSET
        assert asset.storage_id == backend.id
        assert await registry.count_files(backend.id) == 1


class TestSweep:
    """Tests for sweep_expired_sessions."""

    @pytest.mark.asyncio
    async def test_sweep_removes_only_expired(self, manager, make_backend, make_media, adapter, test_database):
        await make_backend()
        media_id = await make_media()
        old = await manager.create_session(USER_ID, "a.mkv", 10, "video/x-matroska", media_id=media_id)
        fresh = await manager.create_session(USER_ID, "b.mkv", 10, "video/x-matroska", media_id=media_id)
        await test_database.execute(
            upload_sessions.update()
            .where(upload_sessions.c.id == int(old.session_id))
            .values(expires_at=utcnow() - timedelta(hours=1))
        )

        removed = await manager.sweep_expired_sessions()

        assert removed == 1
        assert await manager.get_session(int(old.session_id)) is None
        assert await manager.get_session(int(fresh.session_id)) is not None
        adapter.delete_folder.assert_awaited_once_with(old.session_id)

    @pytest.mark.asyncio
    async def test_sweep_tolerates_backend_errors(self, manager, make_backend, make_media, adapter):
        await make_backend()
        media_id = await make_media()
        await manager.create_session(USER_ID, "a.mkv", 10, "video/x-matroska", media_id=media_id)
        adapter.delete_folder.side_effect = BackendRequestFailed("down")

        removed = await manager.sweep_expired_sessions(now=utcnow() + timedelta(hours=25))

        assert removed == 1

    @pytest.mark.asyncio
    async def test_sweep_nothing_expired(self, manager):
        assert await manager.sweep_expired_sessions() == 0
