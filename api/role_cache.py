"""
Process-wide cache of resolved role -> backend assignments.

Image roles (poster, backdrop, subtitle) resolve to a single backend whose
secrets are already decrypted. Entries expire after ROLE_CACHE_TTL seconds and
are dropped explicitly whenever a role assignment or a backend's token
changes, locally or in another process (storage-role-cache-invalidated).
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from api.enums import StorageRole
from api.metrics import ROLE_CACHE_TOTAL
from api.models import StorageBackend
from config import ROLE_CACHE_TTL

logger = logging.getLogger(__name__)


class RoleCache:
    def __init__(self, ttl: float = ROLE_CACHE_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[StorageRole, Tuple[StorageBackend, float]] = {}
        self._locks: Dict[StorageRole, asyncio.Lock] = {}

    def lock(self, role: StorageRole) -> asyncio.Lock:
        """Lock serializing resolution of one role, so a miss loads the backend once."""
        if role not in self._locks:
            self._locks[role] = asyncio.Lock()
        return self._locks[role]

    def get(self, role: StorageRole) -> Optional[StorageBackend]:
        entry = self._entries.get(role)
        if entry is None:
            ROLE_CACHE_TOTAL.labels(result="miss").inc()
            return None
        backend, stored_at = entry
        if self._clock() - stored_at >= self.ttl:
            del self._entries[role]
            ROLE_CACHE_TOTAL.labels(result="miss").inc()
            return None
        ROLE_CACHE_TOTAL.labels(result="hit").inc()
        return backend

    def put(self, role: StorageRole, backend: StorageBackend) -> None:
        self._entries[role] = (backend, self._clock())

    def invalidate(self, role: Optional[StorageRole] = None) -> None:
        """Drop one role, or every role when ``role`` is None."""
        if role is None:
            dropped = len(self._entries)
            self._entries.clear()
        else:
            dropped = 1 if self._entries.pop(role, None) is not None else 0
        if dropped:
            ROLE_CACHE_TOTAL.labels(result="invalidated").inc(dropped)
            logger.debug(f"Invalidated {dropped} role cache entr{'y' if dropped == 1 else 'ies'} ({role})")

    def invalidate_backend(self, backend_id: int) -> None:
        """Drop every role currently resolved to ``backend_id``."""
        for role, (backend, _) in list(self._entries.items()):
            if backend.id == backend_id:
                self.invalidate(role)

    def handle_message(self, message: Mapping[str, Any]) -> None:
        """Apply a storage-role-cache-invalidated broadcast."""
        role = message.get("role")
        backend_id = message.get("backend_id")
        if role:
            try:
                self.invalidate(StorageRole(role))
            except ValueError:
                logger.warning(f"Ignoring invalidation for unknown role {role!r}")
                return
        elif backend_id:
            self.invalidate_backend(int(backend_id))
        else:
            self.invalidate()


_role_cache: Optional[RoleCache] = None


def get_role_cache() -> RoleCache:
    global _role_cache
    if _role_cache is None:
        _role_cache = RoleCache()
    return _role_cache
