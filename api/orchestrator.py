"""
Transcode orchestration: commits verified sources, fans a source out into one
job per enabled codec, and reconciles media / episode state as workers report
back.

Job callbacks are reference checked. A callback is applied only while
- the item still exists,
- the item's current source is the source the job was issued for, and
- the job is still in the item's in-flight list (transcode_jobs).
Anything else is a stale callback (the source was replaced, deleted or the job
cancelled); it is logged, counted and dropped, never escalated.

Database effects of a callback run in one transaction with the item row
locked, so concurrent renditions serialize their status check-and-set and
source-ready fires once. Notifications and remote file deletions happen after
the transaction commits.
"""

import json
import logging
from typing import Dict, List, Optional, Sequence, Tuple

import sqlalchemy as sa
from databases import Database

from api.common import utcnow
from api.database import database, episodes, media, stored_files, transcode_jobs
from api.db_retry import run_in_transaction
from api.enums import (
    AudioCodec,
    PublicStatus,
    SourceStatus,
    StoredFileKind,
    VideoCodec,
)
from api.errors import MediaNotFound, MediaStoreError, SourceAlreadyExists, SourceNotFound
from api.ids import new_id
from api.job_outcomes import (
    JobCancelled,
    JobErrored,
    JobFinished,
    JobOutcome,
    JobRef,
    JobRetrying,
    RenditionReady,
    SourceInfoUpdated,
)
from api.job_queue import JobQueue, TranscodeJobMessage, get_job_queue
from api.media_state import MediaStateMachine, Transition
from api.metrics import (
    RENDITION_BYTES_TOTAL,
    RENDITIONS_TOTAL,
    STALE_CALLBACKS_TOTAL,
    TRANSCODE_JOBS_TOTAL,
)
from api.models import MediaItem, StoredFile, TranscodeJob, UploadSession
from api.pubsub import Publisher
from api.registry import StorageRegistry
from api.schemas import TranscodeOptions
from config import AUDIO_CODECS, DEFAULT_QUEUE_PRIORITY, ENCODING_DEFAULTS, QUALITY_LADDER, VIDEO_CODECS
from storage.base import RemoteFile
from storage.factory import get_adapter

logger = logging.getLogger(__name__)

_UNSET = object()


class TranscodeOrchestrator:
    def __init__(
        self,
        db: Database = database,
        registry: Optional[StorageRegistry] = None,
        job_queue: Optional[JobQueue] = None,
        adapter_factory=get_adapter,
        video_codecs: int = VIDEO_CODECS,
        qualities: Sequence[int] = QUALITY_LADDER,
    ):
        self.db = db
        self.registry = registry or StorageRegistry(db)
        self.job_queue = job_queue or get_job_queue()
        self.adapter_factory = adapter_factory
        self.video_codecs = video_codecs
        self.qualities = list(qualities)

    # =========================================================================
    # Item access
    # =========================================================================

    async def get_item(self, media_id: int, episode_id: Optional[int] = None, for_update: bool = False) -> MediaItem:
        """
        Load the processing state of a movie or an episode.

        Raises:
            MediaNotFound: If the media (or the episode within it) does not exist
        """
        if episode_id is not None:
            query = episodes.select().where(episodes.c.id == episode_id).where(episodes.c.media_id == media_id)
        else:
            query = media.select().where(media.c.id == media_id)
        if for_update:
            query = query.with_for_update()
        row = await self.db.fetch_one(query)
        if row is None:
            raise MediaNotFound(media_id=str(media_id), episode_id=str(episode_id) if episode_id else None)
        return MediaItem(
            media_id=media_id,
            episode_id=episode_id,
            source_file_id=row["source_file_id"],
            source_status=SourceStatus(row["source_status"]),
            public_status=PublicStatus(row["public_status"]),
            external_stream_url=row["external_stream_url"],
        )

    async def list_jobs(self, media_id: int, episode_id: Optional[int] = None) -> List[TranscodeJob]:
        """In-flight jobs of an item, oldest first."""
        rows = await self.db.fetch_all(
            self._item_filter(transcode_jobs, media_id, episode_id).order_by(transcode_jobs.c.id)
        )
        return [TranscodeJob.from_mapping(row) for row in rows]

    async def list_streams(self, source_id: int) -> List[StoredFile]:
        rows = await self.db.fetch_all(
            stored_files.select()
            .where(stored_files.c.kind == StoredFileKind.STREAM.value)
            .where(stored_files.c.source_id == source_id)
            .order_by(stored_files.c.id)
        )
        return [StoredFile.from_mapping(row) for row in rows]

    async def get_file(self, file_id: int) -> Optional[StoredFile]:
        row = await self.db.fetch_one(stored_files.select().where(stored_files.c.id == file_id))
        return StoredFile.from_mapping(row) if row else None

    @staticmethod
    def _item_filter(table: sa.Table, media_id: int, episode_id: Optional[int]):
        query = table.select().where(table.c.media_id == media_id)
        if episode_id is None:
            return query.where(table.c.episode_id.is_(None))
        return query.where(table.c.episode_id == episode_id)

    async def _write_item(self, item: MediaItem, transition: Transition, source_file_id=_UNSET) -> None:
        table = episodes if item.is_episode else media
        key = item.episode_id if item.is_episode else item.media_id
        values = {
            "source_status": transition.source_status.value,
            "public_status": transition.public_status.value,
            "updated_at": utcnow(),
        }
        if source_file_id is not _UNSET:
            values["source_file_id"] = source_file_id
            item.source_file_id = source_file_id
        await self.db.execute(table.update().where(table.c.id == key).values(**values))
        item.source_status = transition.source_status
        item.public_status = transition.public_status

        if item.is_episode and (transition.became_public or transition.left_public):
            await self.recompute_public_episode_count(item.media_id)

    async def recompute_public_episode_count(self, media_id: int) -> int:
        """Recount a show's publicly available episodes and store the result on the show."""
        count = await self.db.fetch_val(
            sa.select(sa.func.count())
            .select_from(episodes)
            .where(episodes.c.media_id == media_id)
            .where(episodes.c.public_status == PublicStatus.DONE.value)
        )
        await self.db.execute(
            media.update().where(media.c.id == media_id).values(public_episode_count=count or 0, updated_at=utcnow())
        )
        return count or 0

    async def insert_file(self, stored: StoredFile, **extra) -> None:
        await self.db.execute(
            stored_files.insert().values(
                id=stored.id,
                kind=stored.kind.value,
                name=stored.name,
                path=stored.path,
                remote_id=stored.remote_id,
                size=stored.size,
                mime_type=stored.mime_type,
                storage_id=stored.storage_id,
                media_id=stored.media_id,
                episode_id=stored.episode_id,
                user_id=stored.user_id,
                source_id=stored.source_id,
                job_id=stored.job_id,
                stream_type=stored.stream_type.value if stored.stream_type else None,
                quality=stored.quality,
                codec=stored.codec,
                language=stored.language,
                channels=stored.channels,
                duration=extra.get("duration"),
                width=extra.get("width"),
                height=extra.get("height"),
                created_at=utcnow(),
            )
        )

    async def _delete_files(self, files: Sequence[StoredFile]) -> None:
        """Delete file rows and release their usage on the owning backends."""
        if not files:
            return
        await self.db.execute(stored_files.delete().where(stored_files.c.id.in_([f.id for f in files])))
        for stored in files:
            await self.registry.remove_file(stored.storage_id, stored.id)

    async def _remove_source(self, item: MediaItem) -> Tuple[List[TranscodeJob], List[StoredFile], Transition]:
        """Drop the item's source, renditions and in-flight jobs. Caller holds the transaction."""
        jobs = await self.list_jobs(item.media_id, item.episode_id)
        files: List[StoredFile] = []
        source = await self.get_file(item.source_file_id) if item.source_file_id else None
        if source is not None:
            files.append(source)
        if item.source_file_id:
            files.extend(await self.list_streams(item.source_file_id))

        await self._delete_files(files)
        await self.db.execute(
            transcode_jobs.delete()
            .where(transcode_jobs.c.media_id == item.media_id)
            .where(
                transcode_jobs.c.episode_id.is_(None)
                if item.episode_id is None
                else transcode_jobs.c.episode_id == item.episode_id
            )
        )
        transition = MediaStateMachine.on_source_removed(item)
        await self._write_item(item, transition, source_file_id=None)
        return jobs, files, transition

    async def _delete_remote(self, files: Sequence[StoredFile], whole_folders: bool) -> None:
        """
        Best-effort remote cleanup after the database changes committed.

        Args:
            files: Removed files
            whole_folders: Delete each file's folder (source removal) instead of single files
        """
        targets: Dict[int, set] = {}
        for stored in files:
            target = stored.path if whole_folders else stored.remote_id
            if target:
                targets.setdefault(stored.storage_id, set()).add(target)

        for storage_id, names in targets.items():
            try:
                backend = await self.registry.get_backend(storage_id)
                async with self.adapter_factory(
                    backend, save_tokens=self.registry.save_tokens, vault=self.registry.vault
                ) as adapter:
                    for name in sorted(names):
                        if whole_folders:
                            await adapter.delete_folder(name)
                        else:
                            await adapter.delete(name)
            except MediaStoreError as e:
                logger.warning(f"Failed to delete remote files {sorted(names)} on backend {storage_id}: {e.message}")

    # =========================================================================
    # Commit and enqueue
    # =========================================================================

    async def commit_source(
        self,
        session: UploadSession,
        remote: RemoteFile,
        options: Optional[TranscodeOptions] = None,
    ) -> StoredFile:
        """
        Record a verified upload as the item's source and enqueue its jobs.

        Runs inside the caller's transaction: if job submission fails the
        whole commit rolls back.

        Raises:
            MediaNotFound: If the target item does not exist
            SourceAlreadyExists: If the item already has a source
            JobQueueUnavailable: If the jobs could not be submitted
        """
        item = await self.get_item(session.media_id, session.episode_id, for_update=True)
        if not MediaStateMachine.can_commit_source(item):
            raise SourceAlreadyExists(media_id=str(item.media_id))

        source = StoredFile(
            id=session.id,
            kind=StoredFileKind.SOURCE,
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
        await self.insert_file(source)
        await self._write_item(item, MediaStateMachine.on_source_committed(item), source_file_id=source.id)
        await self.enqueue_jobs(item, source, options)
        logger.info(f"Committed source {source.id} for {item.label} ({source.size} bytes)")
        return source

    async def enqueue_jobs(
        self,
        item: MediaItem,
        source: StoredFile,
        options: Optional[TranscodeOptions] = None,
        replace_streams: Sequence[StoredFile] = (),
    ) -> List[TranscodeJob]:
        """
        Create one job per enabled codec, in priority order, and submit them as one batch.

        The first job is the primary job. Streams in ``replace_streams`` are
        handed to the job of their codec (codec-less streams and streams of
        codecs no longer enabled go to the primary job) and removed when that
        job finishes.

        Returns:
            The created jobs, primary first
        """
        options = options or TranscodeOptions()
        codecs = VideoCodec.from_mask(options.video_codecs or self.video_codecs)
        if options.audio_only:
            # Audio renditions do not depend on the video codec
            codecs = codecs[:1]
        qualities = options.force_video_quality or self.qualities
        priority = options.queue_priority or DEFAULT_QUEUE_PRIORITY
        job_options = options.model_dump(
            exclude={"video_codecs", "queue_priority", "force_video_quality", "override_settings"}
        )
        job_options["audio_codecs"] = [codec.label for codec in AudioCodec.from_mask(AUDIO_CODECS)]
        overrides = [setting.model_dump() for setting in options.override_settings]

        jobs: List[TranscodeJob] = []
        messages: List[TranscodeJobMessage] = []
        now = utcnow()
        for index, codec in enumerate(codecs):
            replace_ids = [
                stream.id
                for stream in replace_streams
                if stream.codec == int(codec) or (index == 0 and (not stream.codec or stream.codec not in codecs))
            ]
            job = TranscodeJob(
                id=new_id(),
                media_id=item.media_id,
                episode_id=item.episode_id,
                source_id=source.id,
                storage_id=source.storage_id,
                user_id=source.user_id,
                codec=int(codec),
                is_primary=index == 0,
                replace_stream_ids=replace_ids,
            )
            await self.db.execute(
                transcode_jobs.insert().values(
                    id=job.id,
                    media_id=job.media_id,
                    episode_id=job.episode_id,
                    source_id=job.source_id,
                    storage_id=job.storage_id,
                    user_id=job.user_id,
                    codec=job.codec,
                    is_primary=job.is_primary,
                    replace_stream_ids=json.dumps(replace_ids) if replace_ids else None,
                    created_at=now,
                )
            )
            jobs.append(job)
            messages.append(
                TranscodeJobMessage(
                    job_id=job.id,
                    codec=job.codec,
                    is_primary=job.is_primary,
                    media_id=job.media_id,
                    episode_id=job.episode_id,
                    source_id=source.id,
                    storage_id=source.storage_id,
                    user_id=source.user_id,
                    filename=source.name,
                    size=source.size,
                    mime_type=source.mime_type or "application/octet-stream",
                    qualities=list(qualities),
                    encoding={"defaults": ENCODING_DEFAULTS[codec.label], "overrides": overrides},
                    options=job_options,
                    replace_stream_ids=replace_ids,
                    priority=priority,
                    created_at=now,
                )
            )

        await self.job_queue.submit_batch(messages)
        for job in jobs:
            TRANSCODE_JOBS_TOTAL.labels(codec=VideoCodec(job.codec).label, event="enqueued").inc()
        logger.info(
            f"Enqueued {len(jobs)} job(s) for {item.label}: "
            f"{', '.join(VideoCodec(job.codec).label for job in jobs)} (primary {jobs[0].id if jobs else None})"
        )
        return jobs

    async def encode_existing_source(
        self,
        media_id: int,
        episode_id: Optional[int] = None,
        options: Optional[TranscodeOptions] = None,
    ) -> List[TranscodeJob]:
        """
        Re-run transcoding from the item's committed source.

        In-flight jobs are cancelled. Current streams stay available and are
        replaced codec by codec as the new jobs finish.

        Raises:
            SourceNotFound: If the item has no source
        """

        async def _apply():
            item = await self.get_item(media_id, episode_id, for_update=True)
            source = await self.get_file(item.source_file_id) if item.source_file_id else None
            if source is None:
                raise SourceNotFound(media_id=str(media_id))
            old_jobs = await self.list_jobs(media_id, episode_id)
            if old_jobs:
                await self.db.execute(transcode_jobs.delete().where(transcode_jobs.c.id.in_([j.id for j in old_jobs])))
            streams = await self.list_streams(source.id)
            await self._write_item(item, MediaStateMachine.on_reencode(item, bool(streams)))
            jobs = await self.enqueue_jobs(item, source, options, replace_streams=streams)
            return old_jobs, jobs

        old_jobs, jobs = await run_in_transaction(self.db, _apply, max_retries=0)
        if old_jobs:
            await self.job_queue.request_cancel([job.id for job in old_jobs], reason="re-encode")
            for job in old_jobs:
                TRANSCODE_JOBS_TOTAL.labels(codec=VideoCodec(job.codec).label, event="cancelled").inc()
        return jobs

    # =========================================================================
    # Cancellation / deletion
    # =========================================================================

    async def cancel_all(self, media_id: int, episode_id: Optional[int] = None) -> List[TranscodeJob]:
        """
        Cancel every in-flight job of an item and delete its source and renditions.

        Used when the item itself is deleted; a missing source is not an error.

        Returns:
            The jobs that were cancelled
        """

        async def _apply():
            item = await self.get_item(media_id, episode_id, for_update=True)
            if item.source_file_id is None:
                jobs = await self.list_jobs(media_id, episode_id)
                if jobs:
                    await self.db.execute(transcode_jobs.delete().where(transcode_jobs.c.id.in_([j.id for j in jobs])))
                return jobs, []
            jobs, files, _ = await self._remove_source(item)
            return jobs, files

        jobs, files = await run_in_transaction(self.db, _apply)
        if jobs:
            # One request for all jobs; workers are trusted to stop or discard the work
            await self.job_queue.request_cancel([job.id for job in jobs])
            for job in jobs:
                TRANSCODE_JOBS_TOTAL.labels(codec=VideoCodec(job.codec).label, event="cancelled").inc()
        await self._delete_remote(files, whole_folders=True)
        if files:
            logger.info(f"Removed source and {len(files) - 1} rendition(s) of media {media_id} episode {episode_id}")
        return jobs

    async def delete_source(self, media_id: int, episode_id: Optional[int] = None) -> None:
        """
        Delete an item's source: cancels its jobs and removes all files.

        Raises:
            SourceNotFound: If the item has no source
        """
        item = await self.get_item(media_id, episode_id)
        if item.source_file_id is None:
            raise SourceNotFound(media_id=str(media_id))
        await self.cancel_all(media_id, episode_id)

    # =========================================================================
    # Job callbacks
    # =========================================================================

    def _drop_stale(self, outcome: JobRef, reason: str) -> None:
        STALE_CALLBACKS_TOTAL.labels(outcome=type(outcome).__name__).inc()
        logger.info(
            f"Dropping {type(outcome).__name__} of job {outcome.job_id} for media {outcome.media_id} "
            f"episode {outcome.episode_id}: {reason}"
        )

    async def _load_context(self, outcome: JobRef) -> Optional[Tuple[MediaItem, TranscodeJob]]:
        """Lock the item and check the callback still refers to its current source and an in-flight job."""
        try:
            item = await self.get_item(outcome.media_id, outcome.episode_id, for_update=True)
        except MediaNotFound:
            self._drop_stale(outcome, "item no longer exists")
            return None
        if item.source_file_id != outcome.source_id:
            self._drop_stale(outcome, f"source {outcome.source_id} is not the current source")
            return None
        row = await self.db.fetch_one(transcode_jobs.select().where(transcode_jobs.c.id == outcome.job_id))
        if row is None:
            self._drop_stale(outcome, "job is not in flight")
            return None
        job = TranscodeJob.from_mapping(row)
        if job.source_id != outcome.source_id:
            self._drop_stale(outcome, "job was issued for another source")
            return None
        return item, job

    async def update_source_info(self, outcome: SourceInfoUpdated) -> bool:
        """Store probe information a worker reported for the source."""

        async def _apply():
            context = await self._load_context(outcome)
            if context is None:
                return False
            await self.db.execute(
                stored_files.update()
                .where(stored_files.c.id == outcome.source_id)
                .values(duration=outcome.duration, width=outcome.width, height=outcome.height)
            )
            return True

        return await run_in_transaction(self.db, _apply)

    async def report_rendition(self, outcome: RenditionReady) -> Optional[StoredFile]:
        """
        Record one produced rendition.

        The first rendition of an item makes it public and fires source-ready,
        exactly once even when renditions land concurrently.

        Returns:
            The new stream file, or None for a stale callback
        """

        async def _apply():
            context = await self._load_context(outcome)
            if context is None:
                return None, None
            item, job = context
            stream = StoredFile(
                id=new_id(),
                kind=StoredFileKind.STREAM,
                name=outcome.name,
                path=outcome.path,
                remote_id=outcome.remote_id,
                size=outcome.size,
                mime_type=outcome.mime_type,
                storage_id=job.storage_id,
                media_id=item.media_id,
                episode_id=item.episode_id,
                user_id=job.user_id,
                source_id=outcome.source_id,
                job_id=job.id,
                stream_type=outcome.stream_type,
                quality=outcome.quality,
                codec=outcome.codec if outcome.codec is not None else job.codec,
                language=outcome.language,
                channels=outcome.channels,
            )
            await self.insert_file(stream)
            await self.registry.add_file(job.storage_id, stream.id, stream.size)
            transition = MediaStateMachine.on_rendition_added(item)
            if transition.changes(item):
                await self._write_item(item, transition)
            return stream, transition

        stream, transition = await run_in_transaction(self.db, _apply)
        if stream is None:
            return None

        RENDITIONS_TOTAL.labels(stream_type=stream.stream_type.value).inc()
        RENDITION_BYTES_TOTAL.inc(stream.size)
        logger.debug(f"Rendition {stream.id} ({stream.stream_type.value} {stream.quality}) for media {stream.media_id}")
        await Publisher.publish_rendition_added(
            stream.media_id, stream.episode_id, stream.id, stream.stream_type.value, stream.quality, stream.codec
        )
        if transition.became_public:
            logger.info(f"Media {stream.media_id} episode {stream.episode_id} is now public")
            await Publisher.publish_source_ready(stream.media_id, stream.episode_id)
        return stream

    async def job_done(self, outcome: JobRef, cancelled: bool = False) -> Optional[TranscodeJob]:
        """
        Remove a finished (or cancelled) job from the in-flight list.

        A finished job marks the source DONE, drops the streams it replaces and,
        if it was the primary job, notifies the uploader.

        Returns:
            The job, or None for a stale callback
        """

        async def _apply():
            context = await self._load_context(outcome)
            if context is None:
                return None, []
            item, job = context
            await self.db.execute(transcode_jobs.delete().where(transcode_jobs.c.id == job.id))
            replaced: List[StoredFile] = []
            if not cancelled and job.replace_stream_ids:
                rows = await self.db.fetch_all(
                    stored_files.select().where(stored_files.c.id.in_(job.replace_stream_ids))
                )
                replaced = [StoredFile.from_mapping(row) for row in rows]
                await self._delete_files(replaced)
            transition = MediaStateMachine.on_job_done(item, cancelled=cancelled)
            if transition.changes(item):
                await self._write_item(item, transition)
            return job, replaced

        job, replaced = await run_in_transaction(self.db, _apply)
        if job is None:
            return None

        codec = VideoCodec(job.codec).label
        TRANSCODE_JOBS_TOTAL.labels(codec=codec, event="cancelled" if cancelled else "done").inc()
        logger.info(f"Job {job.id} ({codec}) {'cancelled' if cancelled else 'finished'} for media {job.media_id}")
        await self._delete_remote(replaced, whole_folders=False)
        if job.is_primary and not cancelled:
            await Publisher.publish_processing_succeeded(job.user_id, job.media_id, job.episode_id, job.id)
        return job

    async def job_failed(self, outcome: JobErrored) -> Optional[TranscodeJob]:
        """
        Handle a failed job: the source and all its renditions are removed and
        the item goes back to PENDING so a new source can be uploaded.

        Only the first failure for a source takes effect; later callbacks for
        the same source are stale. Records already handled by the worker are
        ignored.

        Returns:
            The failed job, or None if nothing was done
        """
        if outcome.handled:
            logger.debug(f"Failure of job {outcome.job_id} was already handled ({outcome.error_code})")
            return None

        async def _apply():
            context = await self._load_context(outcome)
            if context is None:
                return None, [], []
            item, job = context
            jobs, files, _ = await self._remove_source(item)
            return job, [j for j in jobs if j.id != job.id], files

        job, siblings, files = await run_in_transaction(self.db, _apply)
        if job is None:
            return None

        TRANSCODE_JOBS_TOTAL.labels(codec=VideoCodec(job.codec).label, event="failed").inc()
        logger.warning(
            f"Job {job.id} failed for media {job.media_id} episode {job.episode_id}, source removed: "
            f"{outcome.error_code or ''} {outcome.error or ''}".rstrip()
        )
        if siblings:
            await self.job_queue.request_cancel([sibling.id for sibling in siblings], reason="sibling-failed")
        await self._delete_remote(files, whole_folders=True)
        await Publisher.publish_processing_failed(
            job.user_id, job.media_id, job.episode_id, job.id, outcome.error_code, outcome.error
        )
        return job

    async def job_retrying(self, outcome: JobRetrying) -> int:
        """
        A worker restarts a job: discard the renditions it already produced.

        Returns:
            Number of renditions removed
        """

        async def _apply():
            context = await self._load_context(outcome)
            if context is None:
                return None, []
            item, job = context
            streams = [s for s in await self.list_streams(outcome.source_id) if s.job_id == job.id]
            await self._delete_files(streams)
            remaining = len(await self.list_streams(outcome.source_id))
            transition = MediaStateMachine.on_streams_dropped(item, remaining)
            if transition.changes(item):
                await self._write_item(item, transition)
            return job, streams

        job, streams = await run_in_transaction(self.db, _apply)
        if job is None:
            return 0
        await self._delete_remote(streams, whole_folders=False)
        TRANSCODE_JOBS_TOTAL.labels(codec=VideoCodec(job.codec).label, event="retried").inc()
        logger.info(f"Job {outcome.job_id} retrying (attempt {outcome.attempt}), dropped {len(streams)} rendition(s)")
        return len(streams)

    async def apply_outcome(self, outcome: JobOutcome) -> None:
        """Dispatch a worker result record to its handler."""
        if isinstance(outcome, RenditionReady):
            await self.report_rendition(outcome)
        elif isinstance(outcome, SourceInfoUpdated):
            await self.update_source_info(outcome)
        elif isinstance(outcome, JobCancelled):
            await self.job_done(outcome, cancelled=True)
        elif isinstance(outcome, JobFinished):
            await self.job_done(outcome)
        elif isinstance(outcome, JobRetrying):
            await self.job_retrying(outcome)
        elif isinstance(outcome, JobErrored):
            await self.job_failed(outcome)
        else:
            raise TypeError(f"Unsupported job outcome: {type(outcome).__name__}")
