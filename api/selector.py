"""
Storage selection for new uploads.

Source uploads are balanced greedily over the source pool: the least used
backend is picked and its counter incremented. The read and the increment are
separate statements, so two concurrent selections may pick the same backend.
That only skews the balance, the counters themselves stay exact.

Image uploads (poster, backdrop, subtitle) go to the single backend holding
the role, resolved through the process-wide RoleCache.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from api.db_retry import run_in_transaction
from api.enums import StorageRole
from api.errors import RoleStorageNotConfigured
from api.metrics import STORAGE_BYTES_USED
from api.models import StorageBackend
from api.registry import StorageRegistry
from api.role_cache import RoleCache
from storage.base import BackendAdapter
from storage.factory import get_adapter

logger = logging.getLogger(__name__)


@dataclass
class ImageUpload:
    remote_id: str
    size: int
    storage_id: int
    url: Optional[str] = None


class StorageSelector:
    def __init__(
        self,
        registry: Optional[StorageRegistry] = None,
        role_cache: Optional[RoleCache] = None,
        adapter_factory: Callable[..., BackendAdapter] = get_adapter,
    ):
        self.registry = registry or StorageRegistry()
        self.role_cache = role_cache or self.registry.role_cache
        self.adapter_factory = adapter_factory

    def adapter_for(self, backend: StorageBackend) -> BackendAdapter:
        """Adapter for ``backend`` that persists refreshed tokens through the registry."""
        return self.adapter_factory(backend, save_tokens=self.registry.save_tokens, vault=self.registry.vault)

    async def select_source_backend(self) -> StorageBackend:
        """
        Pick the least used backend of the source pool and count the selection.

        Raises:
            RoleStorageNotConfigured: If no backend serves the source role
        """
        backend = await self.registry.find_least_used(StorageRole.SOURCE)
        if backend is None:
            raise RoleStorageNotConfigured(StorageRole.SOURCE.value)
        await self.registry.increment_used(backend.id, 1)
        backend.used += 1
        STORAGE_BYTES_USED.labels(backend_id=str(backend.id)).set(backend.used)
        self.registry.vault.decrypt(backend)
        logger.debug(f"Selected source backend {backend.id} (used={backend.used})")
        return backend

    async def resolve_role(self, role: StorageRole) -> StorageBackend:
        """
        Backend to use for a new upload of ``role``.

        Raises:
            RoleStorageNotConfigured: If no backend is assigned the role
        """
        if role == StorageRole.SOURCE:
            return await self.select_source_backend()

        backend = self.role_cache.get(role)
        if backend is not None:
            return backend

        async with self.role_cache.lock(role):
            backend = self.role_cache.get(role)
            if backend is not None:
                return backend
            holders = await self.registry.list_backends(role)
            if not holders:
                raise RoleStorageNotConfigured(role.value)
            backend = holders[0]
            self.registry.vault.decrypt(backend)
            self.role_cache.put(role, backend)
            return backend

    async def upload_image(
        self,
        role: StorageRole,
        local_path: Union[str, Path],
        filename: str,
        mime_type: str,
    ) -> ImageUpload:
        """
        Upload a poster, backdrop or subtitle to the backend holding ``role``.

        Args:
            role: An image role
            local_path: File to upload
            filename: Name to store the file under
            mime_type: Content type of the file

        Returns:
            The stored image with its public URL (None if the backend exposes none)
        """
        if not role.is_pinned:
            raise ValueError("upload_image only handles poster, backdrop and subtitle roles")

        backend = await self.resolve_role(role)
        async with self.adapter_for(backend) as adapter:
            remote = await adapter.upload(Path(local_path), filename, mime_type)
            url = adapter.public_link(remote)

        await run_in_transaction(self.registry.db, self.registry.add_file, backend.id, remote.remote_id, remote.size)
        logger.info(f"Uploaded {role.value} {filename} to backend {backend.id} ({remote.size} bytes)")
        return ImageUpload(remote_id=remote.remote_id, size=remote.size, storage_id=backend.id, url=url)

    async def delete_image(self, role: StorageRole, remote_id: str, storage_id: Optional[int] = None) -> None:
        """
        Delete an image and release its usage.

        Args:
            role: Role the image was uploaded under
            remote_id: Backend file id of the image
            storage_id: Backend holding the image; defaults to the current role holder
        """
        if storage_id is not None:
            backend = await self.registry.get_backend(storage_id)
        else:
            backend = await self.resolve_role(role)

        async with self.adapter_for(backend) as adapter:
            await adapter.delete(remote_id)

        await run_in_transaction(self.registry.db, self.registry.remove_file, backend.id, remote_id)
        logger.info(f"Deleted {role.value} {remote_id} from backend {backend.id}")
