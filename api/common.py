"""
Common utilities shared by the registry, session manager and orchestrator.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a stored timestamp to aware UTC.

    SQLite hands back naive datetimes for columns written as UTC, so naive
    values are tagged as UTC rather than converted. ``None`` passes through.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def is_expired(expiry: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when ``expiry`` is unset or not in the future."""
    if expiry is None:
        return True
    return ensure_utc(expiry) <= (now or utcnow())
