"""
Scheduled maintenance worker.

Runs the periodic jobs of the storage subsystem in one process:
- Token refresh sweep (every TOKEN_REFRESH_INTERVAL): refresh the access token
  of every OAuth backend whose token is missing or expired.
- Upload session sweep (every SESSION_SWEEP_INTERVAL): delete expired upload
  sessions and their remote folders.
- Role cache listener: applies storage-role-cache-invalidated broadcasts to
  this process's RoleCache.
"""

import asyncio
import logging
import signal
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from api.database import database
from api.errors import MediaStoreError
from api.pubsub import Subscriber, subscribe_to_role_invalidations
from api.registry import StorageRegistry
from api.role_cache import RoleCache
from api.upload_sessions import UploadSessionManager
from config import SESSION_SWEEP_INTERVAL, TOKEN_REFRESH_INTERVAL
from storage.factory import get_adapter

logger = logging.getLogger(__name__)


async def refresh_expired_tokens(
    registry: StorageRegistry,
    adapter_factory=get_adapter,
    now: Optional[datetime] = None,
) -> int:
    """
    Refresh every backend whose access token is missing or past expiry.

    A failing backend is logged and skipped; the sweep continues with the rest.

    Returns:
        Number of backends refreshed successfully
    """
    backends = await registry.list_backends_for_refresh(now)
    refreshed = 0
    for backend in backends:
        try:
            registry.vault.decrypt(backend)
            async with adapter_factory(backend, save_tokens=registry.save_tokens, vault=registry.vault) as adapter:
                await adapter.refresh_token(trigger="sweep")
            refreshed += 1
        except MediaStoreError as e:
            logger.warning(f"Token refresh failed for backend {backend.id} ({backend.name}): {e.message}")
    if backends:
        logger.info(f"Token sweep refreshed {refreshed}/{len(backends)} backend(s)")
    return refreshed


class MaintenanceWorker:
    """Runs the periodic sweeps and the role cache listener."""

    def __init__(
        self,
        registry: Optional[StorageRegistry] = None,
        sessions: Optional[UploadSessionManager] = None,
        token_interval: float = TOKEN_REFRESH_INTERVAL,
        session_interval: float = SESSION_SWEEP_INTERVAL,
    ):
        self.registry = registry or StorageRegistry()
        self.sessions = sessions or UploadSessionManager()
        self.token_interval = token_interval
        self.session_interval = session_interval
        self.running = False
        self._stop_event = asyncio.Event()
        self._subscriber: Optional[Subscriber] = None

    @property
    def role_cache(self) -> RoleCache:
        return self.registry.role_cache

    async def _every(self, name: str, interval: float, job: Callable[[], Awaitable[int]]) -> None:
        """Run ``job`` now and then every ``interval`` seconds until stopped."""
        while self.running:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Scheduled job {name} failed: {e}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def sweep_tokens(self) -> int:
        return await refresh_expired_tokens(self.registry)

    async def sweep_sessions(self) -> int:
        return await self.sessions.sweep_expired_sessions()

    async def listen_for_invalidations(self) -> None:
        """Apply role cache invalidations published by other processes."""
        while self.running:
            self._subscriber = await subscribe_to_role_invalidations()
            if not self._subscriber.is_active:
                logger.warning("Role cache listener: Redis pub/sub unavailable, entries expire by TTL only")
                await self._subscriber.close()
                self._subscriber = None
                return
            try:
                async for message in self._subscriber.listen():
                    self.role_cache.handle_message(message)
                    if not self.running:
                        break
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Role cache listener error, resubscribing: {e}")
                await asyncio.sleep(1)
            finally:
                await self._subscriber.close()
                self._subscriber = None

    async def start(self) -> None:
        """Start all maintenance loops and wait until stopped."""
        logger.info("Starting maintenance worker")
        self.running = True
        self._stop_event.clear()
        tasks: List[asyncio.Task] = [
            asyncio.create_task(self._every("token-refresh", self.token_interval, self.sweep_tokens)),
            asyncio.create_task(self._every("session-sweep", self.session_interval, self.sweep_sessions)),
            asyncio.create_task(self.listen_for_invalidations()),
        ]
        try:
            await self._stop_event.wait()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Maintenance worker stopped")

    def stop(self) -> None:
        """Signal all loops to stop."""
        logger.info("Stopping maintenance worker")
        self.running = False
        self._stop_event.set()


async def run_maintenance() -> None:
    """Run the maintenance worker until SIGINT / SIGTERM."""
    await database.connect()
    worker = MaintenanceWorker()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    try:
        await worker.start()
    finally:
        await database.disconnect()
