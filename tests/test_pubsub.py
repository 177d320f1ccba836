"""Tests for Redis Pub/Sub event publishing.

Tests cover:
- Channel name generation
- Each outbound event type and its channels
- Ids serialized as strings
- Graceful fallback when Redis is unavailable
- Subscribing, listening and cleanup
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from api.pubsub import (
    EVENT_PROCESSING_FAILED,
    EVENT_PROCESSING_SUCCEEDED,
    EVENT_RENDITION_ADDED,
    EVENT_ROLE_CACHE_INVALIDATED,
    EVENT_SOURCE_READY,
    Publisher,
    Subscriber,
    channel_name,
)

BIG_ID = 1_234_567_890_123_456_789


@pytest.fixture
def captured():
    """Patch Redis with a mock that records (channel, decoded payload) pairs."""
    messages = []
    mock_redis = AsyncMock()

    async def capture_publish(channel, payload):
        messages.append((channel, json.loads(payload)))

    mock_redis.publish.side_effect = capture_publish
    with patch("api.pubsub.get_redis", return_value=mock_redis):
        with patch("api.pubsub.report_redis_result", new_callable=AsyncMock):
            yield messages


class TestChannelName:
    """Tests for channel_name helper function."""

    def test_channel_name_without_entity(self):
        with patch("api.pubsub.REDIS_PUBSUB_PREFIX", "mediastore"):
            assert channel_name("media") == "mediastore:media"

    def test_channel_name_with_entity(self):
        with patch("api.pubsub.REDIS_PUBSUB_PREFIX", "mediastore"):
            assert channel_name("user", "42") == "mediastore:user:42"


class TestPublisherEvents:
    """Tests for the Publisher event methods."""

    @pytest.mark.asyncio
    async def test_rendition_added_goes_to_item_and_global_channels(self, captured):
        result = await Publisher.publish_rendition_added(
            media_id=BIG_ID,
            episode_id=None,
            stream_id=5,
            stream_type="video",
            quality=720,
            codec=1,
        )

        assert result is True
        channels = [channel for channel, _ in captured]
        assert channels == [channel_name("media", str(BIG_ID)), channel_name("media", "all")]
        payload = captured[0][1]
        assert payload["type"] == EVENT_RENDITION_ADDED
        assert payload["media_id"] == str(BIG_ID)
        assert payload["episode_id"] is None
        assert payload["stream_id"] == "5"
        assert payload["quality"] == 720
        assert "timestamp" in payload

    @pytest.mark.asyncio
    async def test_source_ready_includes_episode(self, captured):
        await Publisher.publish_source_ready(media_id=1, episode_id=BIG_ID)

        payload = captured[0][1]
        assert payload["type"] == EVENT_SOURCE_READY
        assert payload["episode_id"] == str(BIG_ID)

    @pytest.mark.asyncio
    async def test_processing_succeeded_addressed_to_user(self, captured):
        await Publisher.publish_processing_succeeded(user_id=9, media_id=1, episode_id=None, job_id=77)

        assert len(captured) == 1
        channel, payload = captured[0]
        assert channel == channel_name("user", "9")
        assert payload["type"] == EVENT_PROCESSING_SUCCEEDED
        assert payload["job_id"] == "77"
        assert payload["user_id"] == "9"

    @pytest.mark.asyncio
    async def test_processing_failed_truncates_error(self, captured):
        await Publisher.publish_processing_failed(
            user_id=9,
            media_id=1,
            episode_id=None,
            job_id=77,
            error_code="E_DECODE",
            error="x" * 500,
        )

        payload = captured[0][1]
        assert payload["type"] == EVENT_PROCESSING_FAILED
        assert payload["error_code"] == "E_DECODE"
        assert len(payload["error"]) == 200

    @pytest.mark.asyncio
    async def test_role_cache_invalidated(self, captured):
        await Publisher.publish_role_cache_invalidated("poster", 3, "assign")

        channel, payload = captured[0]
        assert channel == channel_name("storage", "roles")
        assert payload == {
            "type": EVENT_ROLE_CACHE_INVALIDATED,
            "role": "poster",
            "backend_id": "3",
            "reason": "assign",
            "timestamp": payload["timestamp"],
        }


class TestPublisherFallback:
    """Tests for publishing without a working Redis."""

    @pytest.mark.asyncio
    async def test_returns_false_without_redis(self):
        with patch("api.pubsub.get_redis", return_value=None):
            assert await Publisher.publish_source_ready(1, None) is False

    @pytest.mark.asyncio
    async def test_returns_false_on_publish_error(self):
        mock_redis = AsyncMock()
        mock_redis.publish.side_effect = ConnectionError("gone")
        report = AsyncMock()

        with patch("api.pubsub.get_redis", return_value=mock_redis):
            with patch("api.pubsub.report_redis_result", report):
                result = await Publisher.publish_source_ready(1, None)

        assert result is False
        report.assert_awaited_once_with(False)


class TestSubscriber:
    """Tests for Subscriber."""

    @pytest.mark.asyncio
    async def test_subscribe_without_redis(self):
        subscriber = Subscriber()
        with patch("api.pubsub.get_redis", return_value=None):
            assert await subscriber.subscribe("a") is False
        assert subscriber.is_active is False

    @pytest.mark.asyncio
    async def test_subscribe_and_listen(self):
        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()

        async def fake_listen():
            yield {"type": "subscribe", "channel": "c", "data": 1}
            yield {"type": "message", "channel": "c", "data": "not json"}
            yield {"type": "message", "channel": "c", "data": json.dumps({"type": "x", "role": "poster"})}

        pubsub.listen = fake_listen
        mock_redis = MagicMock()
        mock_redis.pubsub.return_value = pubsub

        subscriber = Subscriber()
        with patch("api.pubsub.get_redis", AsyncMock(return_value=mock_redis)):
            assert await subscriber.subscribe("c") is True

        received = [message async for message in subscriber.listen()]

        assert subscriber.is_active is True
        assert received == [{"channel": "c", "type": "x", "role": "poster"}]

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self):
        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()
        mock_redis = MagicMock()
        mock_redis.pubsub.return_value = pubsub

        subscriber = Subscriber()
        with patch("api.pubsub.get_redis", AsyncMock(return_value=mock_redis)):
            await subscriber.subscribe("c")
        await subscriber.close()

        pubsub.unsubscribe.assert_awaited_once_with("c")
        pubsub.aclose.assert_awaited_once()
        assert subscriber.is_active is False
