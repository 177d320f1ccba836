"""
Retry wrappers for database calls that can fail on contention.

Catalog writes come from the API, the result consumer and the maintenance
sweeps at once. On SQLite that surfaces as "database is locked"; on PostgreSQL
as deadlocks (40P01) or serialization failures (40001). Such calls are re-run
with exponential backoff and jitter. A transaction is always re-run from its
first statement, never resumed.
"""

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, TypeVar

from databases import Database

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 0.1
DEFAULT_MAX_DELAY = 2.0
DEFAULT_EXPONENTIAL_BASE = 2

# Seconds; anything slower is logged with its statement
SLOW_QUERY_THRESHOLD = 1.0

_RETRYABLE_MESSAGES = (
    # SQLite
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
    # PostgreSQL
    "deadlock detected",
    "could not serialize access",
    "could not obtain lock",
    "lock timeout",
    "connection refused",
    "connection reset",
    "server closed the connection unexpectedly",
)
_RETRYABLE_SQLSTATES = frozenset({"40P01", "40001"})


class DatabaseRetryableError(Exception):
    """A contended database call still failed once every attempt was used."""


def is_retryable_database_error(exc: BaseException) -> bool:
    """True if ``exc`` (or anything it was raised from) is transient contention."""
    while exc is not None:
        text = str(exc).lower()
        if any(marker in text for marker in _RETRYABLE_MESSAGES):
            return True
        if getattr(exc, "sqlstate", None) in _RETRYABLE_SQLSTATES:
            return True
        # databases wraps the driver error
        exc = exc.__cause__
    return False


def _backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(max_delay, base_delay * DEFAULT_EXPONENTIAL_BASE**attempt)
    # +/-25%
    delay += delay * 0.25 * (random.random() * 2 - 1)
    return max(0.01, delay)


async def execute_with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    **kwargs: Any,
) -> T:
    """
    Await ``func(*args, **kwargs)``, retrying transient database errors.

    ``max_retries`` counts retries, so the call is made at most
    ``max_retries + 1`` times. Errors that are not contention propagate on
    the first occurrence.

    Raises:
        DatabaseRetryableError: every attempt hit a transient error
    """
    attempts = max_retries + 1
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_database_error(e):
                raise
            attempt += 1
            if attempt >= attempts:
                logger.error(f"Giving up on database call after {attempts} attempts: {e}")
                raise DatabaseRetryableError(
                    f"Database operation failed after {attempts} attempts: {e}"
                ) from e

            delay = _backoff(attempt - 1, base_delay, max_delay)
            logger.warning(f"Database contention ({attempt}/{attempts}), retrying in {delay:.2f}s: {e}")
            await asyncio.sleep(delay)


async def run_in_transaction(
    db: Database,
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = DEFAULT_MAX_RETRIES,
    **kwargs: Any,
) -> T:
    """
    Run ``func`` as one transaction, re-running the whole body on contention.

    An exception from ``func`` rolls back everything it wrote.
    """

    async def attempt() -> T:
        async with db.transaction():
            return await func(*args, **kwargs)

    return await execute_with_retry(attempt, max_retries=max_retries)


async def _timed(call: Callable[[Any], Awaitable[T]], query, max_retries: int) -> T:
    async def attempt() -> T:
        started = time.monotonic()
        try:
            return await call(query)
        finally:
            elapsed = time.monotonic() - started
            if elapsed >= SLOW_QUERY_THRESHOLD:
                logger.warning(f"Slow query ({elapsed:.2f}s): {str(query)[:500]}")

    return await execute_with_retry(attempt, max_retries=max_retries)


async def fetch_one_with_retry(db: Database, query, max_retries: int = DEFAULT_MAX_RETRIES):
    return await _timed(db.fetch_one, query, max_retries)


async def fetch_all_with_retry(db: Database, query, max_retries: int = DEFAULT_MAX_RETRIES):
    return await _timed(db.fetch_all, query, max_retries)


async def db_execute_with_retry(db: Database, query, max_retries: int = DEFAULT_MAX_RETRIES):
    """Run a write statement; returns what ``Database.execute`` returns."""
    return await _timed(db.execute, query, max_retries)
