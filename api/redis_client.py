"""
Shared Redis connection for the job streams and the event channels.

Redis is optional: without MEDIASTORE_REDIS_URL every caller gets ``None`` from
``get_redis()`` and degrades (events are dropped, job submission raises
JobQueueUnavailable). A circuit breaker stops a dead server from being hit by
every publish; callers feed it through ``report_redis_result()``.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError

from api.metrics import REDIS_CIRCUIT_BREAKER_STATE
from config import REDIS_POOL_SIZE, REDIS_SOCKET_CONNECT_TIMEOUT, REDIS_SOCKET_TIMEOUT, REDIS_URL

logger = logging.getLogger(__name__)

# Consecutive failures before the circuit opens
CIRCUIT_FAILURE_THRESHOLD = 3
CIRCUIT_BASE_BACKOFF_SECONDS = 30
CIRCUIT_MAX_BACKOFF_SECONDS = 300


class CircuitBreaker:
    """Counts consecutive failures and blocks calls for an exponential backoff window."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.failures = 0
        self.open_until: Optional[float] = None

    @property
    def is_open(self) -> bool:
        if self.open_until is None:
            return False
        if self._clock() < self.open_until:
            return True
        # Half-open: the next call decides
        logger.info("Redis circuit breaker half-open, allowing a trial call")
        self.open_until = None
        REDIS_CIRCUIT_BREAKER_STATE.set(0)
        return False

    def backoff(self) -> float:
        """Backoff for the current failure streak: 30s, 60s, 120s, 240s, then 300s."""
        exponent = max(0, self.failures - CIRCUIT_FAILURE_THRESHOLD)
        return min(CIRCUIT_MAX_BACKOFF_SECONDS, CIRCUIT_BASE_BACKOFF_SECONDS * (2**exponent))

    def failure(self) -> None:
        self.failures += 1
        if self.failures >= CIRCUIT_FAILURE_THRESHOLD:
            backoff = self.backoff()
            self.open_until = self._clock() + backoff
            REDIS_CIRCUIT_BREAKER_STATE.set(1)
            logger.warning(f"Redis circuit breaker open for {backoff}s after {self.failures} consecutive failures")

    def success(self) -> None:
        if self.failures:
            logger.info(f"Redis recovered after {self.failures} failure(s)")
        self.failures = 0
        self.open_until = None
        REDIS_CIRCUIT_BREAKER_STATE.set(0)


class RedisClient:
    """Process-wide Redis connection pool guarded by a circuit breaker."""

    _instance: Optional["RedisClient"] = None
    _lock: Optional[asyncio.Lock] = None
    _lock_loop: Optional[asyncio.AbstractEventLoop] = None

    def __init__(self, url: str = REDIS_URL, breaker: Optional[CircuitBreaker] = None) -> None:
        self.url = url
        self.breaker = breaker or CircuitBreaker()
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None

    @classmethod
    def _get_lock(cls) -> asyncio.Lock:
        # A lock is bound to the loop that first waits on it; tests run one loop per test
        loop = asyncio.get_running_loop()
        if cls._lock is None or cls._lock_loop is not loop:
            cls._lock = asyncio.Lock()
            cls._lock_loop = loop
        return cls._lock

    @classmethod
    async def get_instance(cls) -> "RedisClient":
        """Get the shared client, connecting on first use."""
        async with cls._get_lock():
            if cls._instance is None:
                instance = cls()
                await instance.connect()
                cls._instance = instance
            return cls._instance

    @classmethod
    async def reset_instance(cls) -> None:
        """Drop the shared client (tests, shutdown)."""
        async with cls._get_lock():
            if cls._instance is not None:
                await cls._instance.close()
                cls._instance = None

    async def connect(self) -> None:
        """Create the pool and verify the server answers."""
        if not self.url:
            logger.info("MEDIASTORE_REDIS_URL not set, job dispatch and events disabled")
            return

        try:
            self._pool = ConnectionPool.from_url(
                self.url,
                max_connections=REDIS_POOL_SIZE,
                socket_timeout=REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=REDIS_SOCKET_CONNECT_TIMEOUT,
                retry_on_error=[RedisConnectionError],
                decode_responses=True,
            )
            self._client = Redis(connection_pool=self._pool)
            await self._client.ping()
            # Never log credentials embedded in the URL
            logger.info(f"Connected to Redis at {self.url.split('@')[-1]}")
        except Exception as e:
            logger.warning(f"Redis connection failed, continuing without it: {e}")
            self.breaker.failure()

    @property
    def is_configured(self) -> bool:
        return bool(self.url)

    @property
    def is_available(self) -> bool:
        """True if a client exists and the circuit is closed or half-open."""
        return self._client is not None and not self.breaker.is_open

    async def get_client(self) -> Optional[Redis]:
        return self._client if self.is_available else None

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.debug(f"Error closing Redis client: {e}")
        if self._pool is not None:
            try:
                await self._pool.disconnect()
            except Exception as e:
                logger.debug(f"Error disconnecting Redis pool: {e}")
        self._client = None
        self._pool = None


async def get_redis() -> Optional[Redis]:
    """
    Shared Redis client.

    Returns:
        The client, or None when Redis is not configured or the circuit is open
    """
    client = await RedisClient.get_instance()
    return await client.get_client()


async def report_redis_result(ok: bool) -> None:
    """Feed the outcome of a Redis call into the circuit breaker."""
    client = await RedisClient.get_instance()
    if ok:
        client.breaker.success()
    else:
        client.breaker.failure()
