"""Tests for the shared Redis client and its circuit breaker.

Tests cover:
- Circuit breaker opening after 3 consecutive failures
- Exponential backoff capped at 300s and the half-open transition
- Graceful fallback when Redis is not configured or unreachable
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from api.redis_client import (
    CIRCUIT_BASE_BACKOFF_SECONDS,
    CIRCUIT_FAILURE_THRESHOLD,
    CIRCUIT_MAX_BACKOFF_SECONDS,
    CircuitBreaker,
    RedisClient,
    get_redis,
    report_redis_result,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(clock=clock)

    def test_opens_after_threshold(self, breaker):
        for _ in range(CIRCUIT_FAILURE_THRESHOLD - 1):
            breaker.failure()
        assert breaker.is_open is False

        breaker.failure()
        assert breaker.is_open is True
        assert breaker.open_until == 1000.0 + CIRCUIT_BASE_BACKOFF_SECONDS

    def test_backoff_doubles_and_is_capped(self, breaker):
        backoffs = []
        for _ in range(CIRCUIT_FAILURE_THRESHOLD + 5):
            breaker.failure()
            backoffs.append(breaker.backoff())

        assert backoffs[CIRCUIT_FAILURE_THRESHOLD - 1 : CIRCUIT_FAILURE_THRESHOLD + 3] == [30, 60, 120, 240]
        assert backoffs[-1] == CIRCUIT_MAX_BACKOFF_SECONDS

    def test_half_open_after_backoff(self, breaker, clock):
        for _ in range(CIRCUIT_FAILURE_THRESHOLD):
            breaker.failure()

        clock.now += CIRCUIT_BASE_BACKOFF_SECONDS

        assert breaker.is_open is False
        assert breaker.open_until is None

    def test_failed_trial_reopens_with_longer_backoff(self, breaker, clock):
        for _ in range(CIRCUIT_FAILURE_THRESHOLD):
            breaker.failure()
        clock.now += CIRCUIT_BASE_BACKOFF_SECONDS
        assert breaker.is_open is False

        breaker.failure()

        assert breaker.is_open is True
        assert breaker.open_until == clock.now + 2 * CIRCUIT_BASE_BACKOFF_SECONDS

    def test_success_resets(self, breaker):
        for _ in range(CIRCUIT_FAILURE_THRESHOLD):
            breaker.failure()
        breaker.success()

        assert breaker.is_open is False
        assert breaker.failures == 0


class TestRedisClient:
    """Tests for RedisClient availability and lifecycle."""

    def test_not_configured_is_unavailable(self):
        client = RedisClient(url="")
        assert client.is_configured is False
        assert client.is_available is False

    @pytest.mark.asyncio
    async def test_connect_without_url_skips_pool(self):
        client = RedisClient(url="")
        with patch("api.redis_client.ConnectionPool") as pool:
            await client.connect()
        pool.from_url.assert_not_called()
        assert await client.get_client() is None

    @pytest.mark.asyncio
    async def test_failed_ping_counts_as_failure(self):
        client = RedisClient(url="redis://localhost:6379")
        redis = AsyncMock()
        redis.ping.side_effect = ConnectionError("refused")
        with patch("api.redis_client.ConnectionPool"), patch("api.redis_client.Redis", return_value=redis):
            await client.connect()

        assert client.breaker.failures == 1

    @pytest.mark.asyncio
    async def test_open_circuit_hides_client(self):
        client = RedisClient(url="redis://localhost:6379")
        client._client = MagicMock()
        assert await client.get_client() is client._client

        for _ in range(CIRCUIT_FAILURE_THRESHOLD):
            client.breaker.failure()

        assert await client.get_client() is None

    @pytest.mark.asyncio
    async def test_close_clears_client(self):
        client = RedisClient(url="redis://localhost:6379")
        redis = AsyncMock()
        client._client = redis

        await client.close()

        redis.aclose.assert_awaited_once()
        assert client._client is None


class TestModuleHelpers:
    """Tests for get_redis and report_redis_result."""

    @pytest.mark.asyncio
    async def test_get_redis_returns_none_without_url(self):
        instance = RedisClient(url="")
        with patch.object(RedisClient, "get_instance", AsyncMock(return_value=instance)):
            assert await get_redis() is None

    @pytest.mark.asyncio
    async def test_report_result_feeds_breaker(self):
        instance = RedisClient(url="redis://localhost:6379")
        with patch.object(RedisClient, "get_instance", AsyncMock(return_value=instance)):
            await report_redis_result(False)
            assert instance.breaker.failures == 1
            await report_redis_result(True)
            assert instance.breaker.failures == 0

    @pytest.mark.asyncio
    async def test_singleton_connects_once(self):
        await RedisClient.reset_instance()
        with patch.object(RedisClient, "connect", AsyncMock()) as connect:
            first = await RedisClient.get_instance()
            second = await RedisClient.get_instance()
        try:
            assert first is second
            connect.assert_awaited_once()
        finally:
            await RedisClient.reset_instance()
