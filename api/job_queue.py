"""
Redis Streams transport between the orchestrator and the external transcode
worker pool.

Streams:
- {prefix}:transcode:{codec}   - One stream per codec (h264, vp9, av1); workers
                                 for a codec consume only their stream
- {prefix}:transcode:cancel    - Cancellation requests (a list of job ids)
- {prefix}:transcode:results   - Result records written by workers, consumed by
                                 worker/result_consumer.py through a consumer group
- {prefix}:transcode:results:dead - Result records that kept failing to apply

Submitting a batch is all-or-nothing: the xadds run in one MULTI/EXEC
pipeline, and any failure raises JobQueueUnavailable so the surrounding
database transaction rolls back. Cancellation is fire-and-forget.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from api.enums import VideoCodec
from api.errors import JobQueueUnavailable
from api.metrics import REDIS_OPERATIONS_TOTAL
from api.redis_client import get_redis, report_redis_result
from config import (
    ERROR_DETAIL_MAX_LENGTH,
    REDIS_CONSUMER_BLOCK_MS,
    REDIS_CONSUMER_GROUP,
    REDIS_PUBSUB_PREFIX,
    REDIS_STREAM_MAX_LEN,
)

logger = logging.getLogger(__name__)

CODEC_STREAMS = {codec: f"{REDIS_PUBSUB_PREFIX}:transcode:{codec.label}" for codec in VideoCodec.from_mask(7)}
CANCEL_STREAM = f"{REDIS_PUBSUB_PREFIX}:transcode:cancel"
RESULT_STREAM = f"{REDIS_PUBSUB_PREFIX}:transcode:results"
DEAD_LETTER_STREAM = f"{REDIS_PUBSUB_PREFIX}:transcode:results:dead"


@dataclass
class TranscodeJobMessage:
    """Job message handed to a codec worker."""

    job_id: int
    codec: int
    is_primary: bool
    media_id: int
    episode_id: Optional[int]
    source_id: int
    storage_id: int
    user_id: int
    filename: str
    size: int
    mime_type: str
    qualities: List[int]
    encoding: Dict[str, Any] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=dict)
    replace_stream_ids: List[int] = field(default_factory=list)
    priority: int = 10
    created_at: Optional[datetime] = None

    @property
    def stream_name(self) -> str:
        return CODEC_STREAMS[VideoCodec(self.codec)]

    def to_stream_dict(self) -> dict:
        """Convert to Redis stream message format (all string values)."""
        return {
            "job_id": str(self.job_id),
            "codec": str(self.codec),
            "is_primary": "1" if self.is_primary else "0",
            "media_id": str(self.media_id),
            "episode_id": str(self.episode_id) if self.episode_id is not None else "",
            "source_id": str(self.source_id),
            "storage_id": str(self.storage_id),
            "user_id": str(self.user_id),
            "filename": self.filename,
            "size": str(self.size),
            "mime_type": self.mime_type,
            "qualities": json.dumps(self.qualities),
            "encoding": json.dumps(self.encoding),
            "options": json.dumps(self.options),
            "replace_stream_ids": json.dumps([str(i) for i in self.replace_stream_ids]),
            "priority": str(self.priority),
            "created_at": (self.created_at or datetime.now(timezone.utc)).isoformat(),
        }

    @classmethod
    def from_stream_dict(cls, data: dict) -> "TranscodeJobMessage":
        """Create from Redis stream message."""
        created_at = None
        if data.get("created_at"):
            try:
                created_at = datetime.fromisoformat(data["created_at"])
            except (ValueError, TypeError):
                pass

        return cls(
            job_id=int(data["job_id"]),
            codec=int(data["codec"]),
            is_primary=data.get("is_primary") == "1",
            media_id=int(data["media_id"]),
            episode_id=int(data["episode_id"]) if data.get("episode_id") else None,
            source_id=int(data["source_id"]),
            storage_id=int(data["storage_id"]),
            user_id=int(data["user_id"]),
            filename=data["filename"],
            size=int(data["size"]),
            mime_type=data["mime_type"],
            qualities=json.loads(data.get("qualities") or "[]"),
            encoding=json.loads(data.get("encoding") or "{}"),
            options=json.loads(data.get("options") or "{}"),
            replace_stream_ids=[int(i) for i in json.loads(data.get("replace_stream_ids") or "[]")],
            priority=int(data.get("priority", 10)),
            created_at=created_at,
        )


class JobQueue:
    """Submit transcode jobs and cancellation requests, consume worker results."""

    async def submit_batch(self, jobs: List[TranscodeJobMessage]) -> None:
        """
        Submit all jobs of one enqueue call atomically.

        Raises:
            JobQueueUnavailable: If Redis is unavailable or the pipeline fails
        """
        if not jobs:
            return

        redis = await get_redis()
        if not redis:
            REDIS_OPERATIONS_TOTAL.labels(operation="submit", result="failed").inc()
            raise JobQueueUnavailable("Redis is not available for job submission")

        try:
            async with redis.pipeline(transaction=True) as pipe:
                for job in jobs:
                    pipe.xadd(job.stream_name, job.to_stream_dict(), maxlen=REDIS_STREAM_MAX_LEN)
                await pipe.execute()
        except Exception as e:
            logger.warning(f"Failed to submit {len(jobs)} transcode jobs: {e}")
            REDIS_OPERATIONS_TOTAL.labels(operation="submit", result="failed").inc()
            await report_redis_result(False)
            raise JobQueueUnavailable() from e

        REDIS_OPERATIONS_TOTAL.labels(operation="submit", result="success").inc()
        await report_redis_result(True)
        logger.debug(f"Submitted jobs {[job.job_id for job in jobs]}")

    async def request_cancel(self, job_ids: List[int], reason: str = "source-deleted") -> bool:
        """
        Submit a single cancellation request for all given jobs.

        Returns:
            True if the request was written, False otherwise
        """
        if not job_ids:
            return True

        redis = await get_redis()
        if not redis:
            logger.warning(f"Redis unavailable, could not cancel jobs {job_ids}")
            return False

        try:
            await redis.xadd(
                CANCEL_STREAM,
                {
                    "job_ids": json.dumps([str(job_id) for job_id in job_ids]),
                    "reason": reason,
                    "requested_at": datetime.now(timezone.utc).isoformat(),
                },
                maxlen=REDIS_STREAM_MAX_LEN,
            )
            REDIS_OPERATIONS_TOTAL.labels(operation="cancel", result="success").inc()
            logger.info(f"Requested cancellation of jobs {job_ids}")
            return True
        except Exception as e:
            logger.warning(f"Failed to request cancellation of jobs {job_ids}: {e}")
            REDIS_OPERATIONS_TOTAL.labels(operation="cancel", result="failed").inc()
            await report_redis_result(False)
            return False


class ResultStream:
    """Consumer-group reader for the worker result stream."""

    def __init__(self, consumer_name: str, group: str = REDIS_CONSUMER_GROUP) -> None:
        self.consumer_name = consumer_name
        self.group = group
        self._initialized = False
        # Id after which the next pending-list read starts; None once caught up
        self._backlog_from: Optional[str] = "0"

    async def initialize(self) -> bool:
        """Create the consumer group if needed. Returns False when Redis is unavailable."""
        redis = await get_redis()
        if not redis:
            return False

        try:
            await redis.xgroup_create(RESULT_STREAM, self.group, id="0", mkstream=True)
            logger.info(f"Created consumer group {self.group} on {RESULT_STREAM}")
        except Exception as e:
            if "BUSYGROUP" not in str(e):
                logger.warning(f"Failed to create consumer group: {e}")
                return False
        self._initialized = True
        return True

    def rewind(self) -> None:
        """Walk this consumer's pending list again on the next read."""
        self._backlog_from = "0"

    async def read(self, count: int = 10) -> List[Tuple[str, dict]]:
        """
        Read result records for this consumer.

        Records delivered earlier but never acknowledged come first, walked
        once from the start of the pending list; new records follow.

        Returns:
            List of (message_id, data) pairs, empty when nothing arrived
        """
        if not self._initialized and not await self.initialize():
            return []

        redis = await get_redis()
        if not redis:
            return []

        if self._backlog_from is not None:
            records = await self._read_from(redis, self._backlog_from, count)
            if records:
                self._backlog_from = records[-1][0]
                return records
            self._backlog_from = None
        return await self._read_from(redis, ">", count)

    async def _read_from(self, redis, last_id: str, count: int) -> List[Tuple[str, dict]]:
        messages = await redis.xreadgroup(
            self.group,
            self.consumer_name,
            {RESULT_STREAM: last_id},
            count=count,
            block=REDIS_CONSUMER_BLOCK_MS,
        )
        if not messages:
            return []
        # messages format: [[stream_name, [(message_id, data), ...]]]
        _, records = messages[0]
        return list(records)

    async def acknowledge(self, message_id: str) -> bool:
        redis = await get_redis()
        if not redis:
            return False
        try:
            await redis.xack(RESULT_STREAM, self.group, message_id)
            return True
        except Exception as e:
            logger.warning(f"Failed to acknowledge result {message_id}: {e}")
            return False

    async def delivery_count(self, message_id: str) -> int:
        """Times the group has delivered ``message_id``; 0 if it is not pending or Redis is down."""
        redis = await get_redis()
        if not redis:
            return 0
        try:
            pending = await redis.xpending_range(RESULT_STREAM, self.group, min=message_id, max=message_id, count=1)
        except Exception as e:
            logger.warning(f"Failed to read delivery count of result {message_id}: {e}")
            return 0
        return int(pending[0]["times_delivered"]) if pending else 0

    async def dead_letter(self, message_id: str, data: dict, error: str) -> bool:
        """Copy a record to the dead-letter stream and acknowledge it."""
        redis = await get_redis()
        if not redis:
            return False
        try:
            await redis.xadd(
                DEAD_LETTER_STREAM,
                {**data, "original_id": message_id, "error": error[:ERROR_DETAIL_MAX_LENGTH]},
                maxlen=REDIS_STREAM_MAX_LEN,
            )
            await redis.xack(RESULT_STREAM, self.group, message_id)
        except Exception as e:
            logger.warning(f"Failed to dead-letter result {message_id}: {e}")
            return False
        REDIS_OPERATIONS_TOTAL.labels(operation="result_dead_letter", result="success").inc()
        return True


_job_queue: Optional[JobQueue] = None


def get_job_queue() -> JobQueue:
    """Get or create the process-wide job queue."""
    global _job_queue
    if _job_queue is None:
        _job_queue = JobQueue()
    return _job_queue
