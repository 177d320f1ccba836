"""
Resumable upload sessions.

A session reserves a backend and a remote folder (named after the session id)
for one file. The client uploads directly to the backend, then reports the
remote file id. ``verify_and_commit`` checks the remote file against the
session and, in one transaction, records the file on the backend, consumes
the session and (for sources) commits the media source and enqueues its
transcode jobs.

Sessions live for UPLOAD_SESSION_TTL_HOURS. Expired sessions are removed by
``sweep_expired_sessions`` together with their remote folders.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from databases import Database

from api.common import utcnow
from api.database import database, upload_sessions
from api.db_retry import fetch_all_with_retry, fetch_one_with_retry, run_in_transaction
from api.enums import StorageRole, StoredFileKind
from api.errors import (
    MediaStoreError,
    SourceAlreadyExists,
    UploadInvalid,
    UploadSessionExpired,
    UploadSessionNotFound,
)
from api.ids import new_id
from api.metrics import UPLOAD_SESSIONS_TOTAL
from api.models import StoredFile, UploadSession
from api.orchestrator import TranscodeOrchestrator
from api.schemas import TranscodeOptions, UploadSessionResponse
from api.selector import StorageSelector
from config import UPLOAD_SESSION_TTL_HOURS
from storage.base import RemoteFile

logger = logging.getLogger(__name__)


class UploadSessionManager:
    def __init__(
        self,
        db: Database = database,
        selector: Optional[StorageSelector] = None,
        orchestrator: Optional[TranscodeOrchestrator] = None,
        ttl_hours: int = UPLOAD_SESSION_TTL_HOURS,
    ):
        self.db = db
        self.selector = selector or StorageSelector()
        self.orchestrator = orchestrator or TranscodeOrchestrator(db, registry=self.selector.registry)
        self.ttl = timedelta(hours=ttl_hours)

    @property
    def registry(self):
        return self.selector.registry

    async def get_session(self, session_id: int) -> Optional[UploadSession]:
        row = await fetch_one_with_retry(self.db, upload_sessions.select().where(upload_sessions.c.id == session_id))
        return UploadSession.from_mapping(row) if row else None

    async def create_session(
        self,
        user_id: int,
        filename: str,
        size: int,
        mime_type: str,
        role: StorageRole = StorageRole.SOURCE,
        media_id: Optional[int] = None,
        episode_id: Optional[int] = None,
    ) -> UploadSessionResponse:
        """
        Open a resumable upload on the backend selected for ``role``.

        Args:
            user_id: Uploading user
            filename: Name the file must carry on the backend
            size: Exact size in bytes the uploaded file must have
            mime_type: Content type of the file
            role: Storage role of the upload
            media_id: Target movie or show (required for sources)
            episode_id: Target episode of a show

        Returns:
            Session id, upload URL and chosen backend

        Raises:
            MediaNotFound: If the target item does not exist
            SourceAlreadyExists: If the target item already has a source
            RoleStorageNotConfigured: If no backend serves the role
        """
        if role == StorageRole.SOURCE:
            item = await self.orchestrator.get_item(media_id, episode_id)
            if item.source_file_id is not None:
                raise SourceAlreadyExists(media_id=str(media_id))

        backend = await self.selector.resolve_role(role)
        session_id = new_id()
        async with self.selector.adapter_for(backend) as adapter:
            target = await adapter.create_upload_session(filename, str(session_id), size, mime_type)

        now = utcnow()
        expires_at = now + self.ttl
        await self.db.execute(
            upload_sessions.insert().values(
                id=session_id,
                filename=filename,
                size=size,
                mime_type=mime_type,
                user_id=user_id,
                storage_id=backend.id,
                role=role.value,
                media_id=media_id,
                episode_id=episode_id,
                created_at=now,
                expires_at=expires_at,
            )
        )
        UPLOAD_SESSIONS_TOTAL.labels(event="created").inc()
        logger.info(f"Created upload session {session_id} for user {user_id} on backend {backend.id} ({size} bytes)")
        return UploadSessionResponse(
            session_id=str(session_id),
            upload_url=target.upload_url,
            backend_id=str(backend.id),
            expires_at=expires_at,
        )

    async def verify_and_commit(
        self,
        session_id: int,
        remote_file_id: str,
        user_id: int,
        options: Optional[TranscodeOptions] = None,
    ) -> StoredFile:
        """
        Verify an uploaded file against its session and commit it.

        A file whose name or size differs from the session is deleted from the
        backend together with the session. A backend failure while looking the
        file up leaves the session in place so the client can retry.

        Args:
            session_id: Session returned by create_session
            remote_file_id: Backend file id reported by the client
            user_id: User committing the upload; must own the session
            options: Transcode options for source uploads

        Returns:
            The committed source (or asset) file

        Raises:
            UploadSessionNotFound: If the session does not exist or belongs to another user
            UploadSessionExpired: If the session is past its expiry
            RemoteFileNotFound: If the backend has no such file
            UploadInvalid: If name or size do not match the session
        """
        session = await self.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise UploadSessionNotFound(session_id=str(session_id))
        if session.is_expired():
            raise UploadSessionExpired(session_id=str(session_id))

        backend = await self.registry.get_backend(session.storage_id)
        async with self.selector.adapter_for(backend) as adapter:
            remote = await adapter.find_file(remote_file_id)

            if remote.name != session.filename or remote.size != session.size:
                try:
                    await adapter.delete_folder(session.folder)
                except MediaStoreError as e:
                    logger.warning(f"Failed to delete folder of invalid upload {session.id}: {e.message}")
                await self.db.execute(upload_sessions.delete().where(upload_sessions.c.id == session.id))
                UPLOAD_SESSIONS_TOTAL.labels(event="invalid").inc()
                logger.info(
                    f"Rejected upload {session.id}: expected {session.filename!r} ({session.size} bytes), "
                    f"got {remote.name!r} ({remote.size} bytes)"
                )
                raise UploadInvalid(
                    expected_name=session.filename,
                    expected_size=session.size,
                    actual_name=remote.name,
                    actual_size=remote.size,
                )

        # Single attempt: the transcode jobs are submitted inside the transaction
        stored = await run_in_transaction(self.db, self._commit, session.id, remote, options, max_retries=0)
        UPLOAD_SESSIONS_TOTAL.labels(event="committed").inc()
        logger.info(f"Committed upload {session.id} as {stored.kind.value} on backend {stored.storage_id}")
        return stored

    async def _commit(
        self, session_id: int, remote: RemoteFile, options: Optional[TranscodeOptions]
    ) -> StoredFile:
        row = await self.db.fetch_one(
            upload_sessions.select().where(upload_sessions.c.id == session_id).with_for_update()
        )
        if row is None:
            # Consumed by a concurrent commit
            raise UploadSessionNotFound(session_id=str(session_id))
        session = UploadSession.from_mapping(row)

        await self.registry.add_file(session.storage_id, session.id, remote.size)
        await self.db.execute(upload_sessions.delete().where(upload_sessions.c.id == session.id))

        if session.role == StorageRole.SOURCE:
            return await self.orchestrator.commit_source(session, remote, options)

        asset = StoredFile(
            id=session.id,
            kind=StoredFileKind.ASSET,
            name=remote.name,
            path=session.folder,
            remote_id=remote.remote_id,
            size=remote.size,
            mime_type=session.mime_type,
            storage_id=session.storage_id,
            media_id=session.media_id,
            episode_id=session.episode_id,
            user_id=session.user_id,
        )
        await self.orchestrator.insert_file(asset)
        return asset

    async def sweep_expired_sessions(self, now: Optional[datetime] = None) -> int:
        """
        Delete every expired session and, best effort, its remote folder.

        Returns:
            Number of sessions removed
        """
        now = now or utcnow()
        rows = await fetch_all_with_retry(
            self.db, upload_sessions.select().where(upload_sessions.c.expires_at <= now)
        )
        expired = [UploadSession.from_mapping(row) for row in rows]
        if not expired:
            return 0

        await self.db.execute(upload_sessions.delete().where(upload_sessions.c.id.in_([s.id for s in expired])))
        UPLOAD_SESSIONS_TOTAL.labels(event="expired").inc(len(expired))

        for session in expired:
            try:
                backend = await self.registry.get_backend(session.storage_id)
                async with self.selector.adapter_for(backend) as adapter:
                    await adapter.delete_folder(session.folder)
            except MediaStoreError as e:
                logger.warning(f"Failed to delete folder of expired upload session {session.id}: {e}")

        logger.info(f"Swept {len(expired)} expired upload session(s)")
        return len(expired)
