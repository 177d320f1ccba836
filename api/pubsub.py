"""
Redis Pub/Sub for outbound state-change events.

Channel naming convention:
- {prefix}:media:{media_id}   - Events about one movie/show (rendition-added, source-ready)
- {prefix}:media:all          - The same events for collaborators watching everything
- {prefix}:user:{user_id}     - Events addressed to an uploader (processing-succeeded/failed)
- {prefix}:storage:roles      - storage-role-cache-invalidated broadcasts

Every message is a JSON object with a ``type`` field and an ISO ``timestamp``.
Publishing is best-effort: when Redis is unavailable the publish methods
return False and the state change itself is unaffected.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, Optional, Set

from api.metrics import REDIS_OPERATIONS_TOTAL
from api.redis_client import get_redis, report_redis_result
from config import REDIS_PUBSUB_PREFIX

logger = logging.getLogger(__name__)

EVENT_RENDITION_ADDED = "rendition-added"
EVENT_SOURCE_READY = "source-ready"
EVENT_PROCESSING_SUCCEEDED = "processing-succeeded"
EVENT_PROCESSING_FAILED = "processing-failed"
EVENT_ROLE_CACHE_INVALIDATED = "storage-role-cache-invalidated"


def channel_name(channel_type: str, entity_id: Optional[str] = None) -> str:
    """
    Generate a channel name with the configured prefix.

    Args:
        channel_type: Type of channel (media, user, storage)
        entity_id: Optional entity ID for specific channels

    Returns:
        Full channel name
    """
    if entity_id is not None:
        return f"{REDIS_PUBSUB_PREFIX}:{channel_type}:{entity_id}"
    return f"{REDIS_PUBSUB_PREFIX}:{channel_type}"


def _item_fields(media_id: int, episode_id: Optional[int]) -> Dict[str, Any]:
    # Snowflake ids exceed the JavaScript safe integer range, send them as strings
    return {
        "media_id": str(media_id),
        "episode_id": str(episode_id) if episode_id is not None else None,
    }


async def _publish(event: str, message: Dict[str, Any], channels: Iterable[str]) -> bool:
    redis = await get_redis()
    if not redis:
        return False

    message = {"type": event, **message, "timestamp": datetime.now(timezone.utc).isoformat()}
    try:
        payload = json.dumps(message)
        for channel in channels:
            await redis.publish(channel, payload)
        REDIS_OPERATIONS_TOTAL.labels(operation="publish", result="success").inc()
        await report_redis_result(True)
        return True
    except Exception as e:
        logger.warning(f"Failed to publish {event}: {e}")
        REDIS_OPERATIONS_TOTAL.labels(operation="publish", result="failed").inc()
        await report_redis_result(False)
        return False


class Publisher:
    """Publish state-change events to Redis Pub/Sub."""

    @staticmethod
    async def publish_rendition_added(
        media_id: int,
        episode_id: Optional[int],
        stream_id: int,
        stream_type: str,
        quality: Optional[int] = None,
        codec: Optional[int] = None,
    ) -> bool:
        """
        Publish that a new rendition is available for an item.

        Args:
            media_id: Movie or show id
            episode_id: Episode id, None for movies
            stream_id: Id of the new stream file
            stream_type: video, audio or manifest
            quality: Rendition height (video only)
            codec: Codec bit of the producing job

        Returns:
            True if published successfully
        """
        message = {
            **_item_fields(media_id, episode_id),
            "stream_id": str(stream_id),
            "stream_type": stream_type,
            "quality": quality,
            "codec": codec,
        }
        return await _publish(
            EVENT_RENDITION_ADDED,
            message,
            [channel_name("media", str(media_id)), channel_name("media", "all")],
        )

    @staticmethod
    async def publish_source_ready(media_id: int, episode_id: Optional[int]) -> bool:
        """Publish that an item's public status flipped to DONE."""
        return await _publish(
            EVENT_SOURCE_READY,
            _item_fields(media_id, episode_id),
            [channel_name("media", str(media_id)), channel_name("media", "all")],
        )

    @staticmethod
    async def publish_processing_succeeded(
        user_id: int,
        media_id: int,
        episode_id: Optional[int],
        job_id: int,
    ) -> bool:
        """Notify the uploading user that the primary transcode job finished."""
        message = {**_item_fields(media_id, episode_id), "user_id": str(user_id), "job_id": str(job_id)}
        return await _publish(EVENT_PROCESSING_SUCCEEDED, message, [channel_name("user", str(user_id))])

    @staticmethod
    async def publish_processing_failed(
        user_id: int,
        media_id: int,
        episode_id: Optional[int],
        job_id: int,
        error_code: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        """
        Notify the uploading user that transcoding failed and the source was removed.

        Args:
            user_id: Uploader to notify
            media_id: Movie or show id
            episode_id: Episode id, None for movies
            job_id: The failed job
            error_code: Worker supplied error code, if any
            error: Worker supplied error message, if any

        Returns:
            True if published successfully
        """
        message = {
            **_item_fields(media_id, episode_id),
            "user_id": str(user_id),
            "job_id": str(job_id),
            "error_code": error_code,
            "error": error[:200] if error else None,
        }
        return await _publish(EVENT_PROCESSING_FAILED, message, [channel_name("user", str(user_id))])

    @staticmethod
    async def publish_role_cache_invalidated(role: Optional[str], backend_id: Optional[int], reason: str) -> bool:
        """
        Tell every process holding a cached role resolution to drop it.

        Args:
            role: The role whose resolution changed, or None for all roles
            backend_id: Backend that triggered the change
            reason: assign, clear, token, update, delete

        Returns:
            True if published successfully
        """
        message = {
            "role": role,
            "backend_id": str(backend_id) if backend_id is not None else None,
            "reason": reason,
        }
        return await _publish(EVENT_ROLE_CACHE_INVALIDATED, message, [channel_name("storage", "roles")])


class Subscriber:
    """Subscribe to Redis Pub/Sub channels."""

    def __init__(self) -> None:
        self._pubsub = None
        self._subscribed_channels: Set[str] = set()

    async def subscribe(self, *channels: str) -> bool:
        """
        Subscribe to one or more channels.

        Returns:
            True if subscribed successfully
        """
        redis = await get_redis()
        if not redis:
            return False

        try:
            if not self._pubsub:
                self._pubsub = redis.pubsub()

            await self._pubsub.subscribe(*channels)
            self._subscribed_channels.update(channels)
            logger.debug(f"Subscribed to channels: {channels}")
            return True
        except Exception as e:
            logger.warning(f"Failed to subscribe to channels: {e}")
            return False

    async def listen(self) -> AsyncIterator[Dict[str, Any]]:
        """
        Async generator yielding decoded messages from subscribed channels.

        Raises:
            Exception: On connection errors (caller should handle reconnection)
        """
        if not self._pubsub:
            return

        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                data = json.loads(message.get("data", "{}"))
            except json.JSONDecodeError:
                logger.debug(f"Invalid JSON in pub/sub message: {message}")
                continue
            yield {"channel": message.get("channel", ""), **data}

    async def close(self) -> None:
        """Close the subscription and clean up."""
        if self._pubsub:
            try:
                if self._subscribed_channels:
                    await self._pubsub.unsubscribe(*self._subscribed_channels)
                await self._pubsub.aclose()
            except Exception as e:
                logger.debug(f"Error closing pub/sub: {e}")
            finally:
                self._pubsub = None
                self._subscribed_channels.clear()

    @property
    def is_active(self) -> bool:
        return self._pubsub is not None and bool(self._subscribed_channels)


async def subscribe_to_role_invalidations() -> Subscriber:
    """Create a subscriber for storage-role-cache-invalidated broadcasts."""
    subscriber = Subscriber()
    await subscriber.subscribe(channel_name("storage", "roles"))
    return subscriber
