"""
Storage registry: CRUD over registered backends, role assignment and usage
accounting.

Usage counters and file lists are changed with single-statement increments
(``used = used + :size``), never read-modify-write, so concurrent writers to
the same backend do not lose updates. ``add_file``/``remove_file`` do not open
transactions of their own; callers run them inside the transaction of the
operation they belong to.
"""

import logging
from datetime import datetime
from typing import List, Optional

import sqlalchemy as sa
from databases import Database

from api.common import utcnow
from api.database import database, storage_backend_files, storage_backends, upload_sessions
from api.db_retry import db_execute_with_retry, fetch_all_with_retry, fetch_one_with_retry, run_in_transaction
from api.enums import StorageKind, StorageRole
from api.errors import (
    StorageBackendHasFiles,
    StorageBackendLimitReached,
    StorageBackendNameExists,
    StorageBackendNotFound,
)
from api.ids import new_id
from api.models import StorageBackend, TokenSet
from api.pubsub import Publisher
from api.role_cache import RoleCache, get_role_cache
from api.schemas import BackendCreate, BackendUpdate
from api.vault import CredentialVault, get_vault
from config import STORAGE_BACKEND_LIMIT
from storage.factory import supports_token_refresh

logger = logging.getLogger(__name__)

_PLAIN_FIELDS = ("name", "client_id", "folder_id", "folder_name", "api_url", "public_url", "secondary_url")


class StorageRegistry:
    def __init__(
        self,
        db: Database = database,
        vault: Optional[CredentialVault] = None,
        role_cache: Optional[RoleCache] = None,
        limit: int = STORAGE_BACKEND_LIMIT,
    ):
        self.db = db
        self._vault = vault
        self.role_cache = role_cache or get_role_cache()
        self.limit = limit

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            self._vault = get_vault()
        return self._vault

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_backend(self, backend_id: int, decrypt: bool = True) -> StorageBackend:
        """
        Load a backend.

        Args:
            backend_id: Backend id
            decrypt: Decrypt the client secret and refresh token on the returned instance

        Raises:
            StorageBackendNotFound: If no backend has this id
        """
        row = await fetch_one_with_retry(
            self.db, storage_backends.select().where(storage_backends.c.id == backend_id)
        )
        if row is None:
            raise StorageBackendNotFound(backend_id=str(backend_id))
        backend = StorageBackend.from_mapping(row)
        if decrypt:
            self.vault.decrypt(backend)
        return backend

    async def list_backends(self, role: Optional[StorageRole] = None) -> List[StorageBackend]:
        query = storage_backends.select().order_by(storage_backends.c.id)
        if role is not None:
            query = query.where(storage_backends.c.role == role.value)
        rows = await fetch_all_with_retry(self.db, query)
        return [StorageBackend.from_mapping(row) for row in rows]

    async def find_least_used(self, role: StorageRole = StorageRole.SOURCE) -> Optional[StorageBackend]:
        """The backend assigned ``role`` with the lowest usage counter (ties broken by age)."""
        query = (
            storage_backends.select()
            .where(storage_backends.c.role == role.value)
            .order_by(storage_backends.c.used, storage_backends.c.id)
            .limit(1)
        )
        row = await fetch_one_with_retry(self.db, query)
        return StorageBackend.from_mapping(row) if row else None

    async def count_files(self, backend_id: int) -> int:
        query = (
            sa.select(sa.func.count())
            .select_from(storage_backend_files)
            .where(storage_backend_files.c.backend_id == backend_id)
        )
        return await self.db.fetch_val(query) or 0

    async def list_backends_for_refresh(self, now: Optional[datetime] = None) -> List[StorageBackend]:
        """Backends with an OAuth refresh token whose access token is missing or past expiry."""
        now = now or utcnow()
        kinds = [kind.value for kind in StorageKind if supports_token_refresh(kind)]
        query = (
            storage_backends.select()
            .where(storage_backends.c.kind.in_(kinds))
            .where(storage_backends.c.refresh_token_encrypted.isnot(None))
            .where(sa.or_(storage_backends.c.expiry.is_(None), storage_backends.c.expiry <= now))
            .order_by(storage_backends.c.id)
        )
        rows = await fetch_all_with_retry(self.db, query)
        return [StorageBackend.from_mapping(row) for row in rows]

    # =========================================================================
    # Backend CRUD
    # =========================================================================

    async def _ensure_name_available(self, name: str, exclude_id: Optional[int] = None) -> None:
        query = sa.select(storage_backends.c.id).where(storage_backends.c.name == name)
        if exclude_id is not None:
            query = query.where(storage_backends.c.id != exclude_id)
        if await self.db.fetch_one(query) is not None:
            raise StorageBackendNameExists(name=name)

    async def _take_pinned_role(self, role: StorageRole, backend_id: int) -> None:
        """Image roles have a single holder: hand the role over from any previous holder."""
        await self.db.execute(
            storage_backends.update()
            .where(storage_backends.c.role == role.value)
            .where(storage_backends.c.id != backend_id)
            .values(role=None, updated_at=utcnow())
        )

    async def register_backend(self, data: BackendCreate) -> StorageBackend:
        """
        Register a new backend with encrypted credentials.

        Raises:
            StorageBackendLimitReached: If the configured maximum is reached
            StorageBackendNameExists: If the name is taken
        """
        backend_id = new_id()
        now = utcnow()

        async def _insert():
            count = await self.db.fetch_val(sa.select(sa.func.count()).select_from(storage_backends))
            if count >= self.limit:
                raise StorageBackendLimitReached(limit=self.limit)
            await self._ensure_name_available(data.name)
            if data.role is not None and data.role.is_pinned:
                await self._take_pinned_role(data.role, backend_id)
            await self.db.execute(
                storage_backends.insert().values(
                    id=backend_id,
                    name=data.name,
                    kind=data.kind.value,
                    role=data.role.value if data.role else None,
                    client_id=data.client_id,
                    client_secret_encrypted=self.vault.encrypt(data.client_secret),
                    refresh_token_encrypted=self.vault.encrypt(data.refresh_token),
                    access_token=None,
                    expiry=None,
                    folder_id=data.folder_id,
                    folder_name=data.folder_name,
                    api_url=data.api_url,
                    public_url=data.public_url,
                    secondary_url=data.secondary_url,
                    used=0,
                    created_at=now,
                    updated_at=now,
                )
            )

        await run_in_transaction(self.db, _insert)
        logger.info(f"Registered storage backend {backend_id} ({data.kind.value}, {data.name})")
        if data.role is not None:
            await self._invalidate(data.role, backend_id, "assign")
        return await self.get_backend(backend_id, decrypt=False)

    async def update_backend(self, backend_id: int, data: BackendUpdate) -> StorageBackend:
        """
        Update a backend's settings or credentials.

        Changing any credential drops the stored access token so the next call
        refreshes with the new credentials.
        """
        fields = data.model_dump(exclude_unset=True)
        values = {key: fields[key] for key in _PLAIN_FIELDS if key in fields}
        if "client_secret" in fields:
            values["client_secret_encrypted"] = self.vault.encrypt(fields["client_secret"])
        if "refresh_token" in fields:
            values["refresh_token_encrypted"] = self.vault.encrypt(fields["refresh_token"])
        if {"client_id", "client_secret", "refresh_token"} & fields.keys():
            values["access_token"] = None
            values["expiry"] = None
        values["updated_at"] = utcnow()

        async def _update():
            existing = await self.get_backend(backend_id, decrypt=False)
            if "name" in values and values["name"] != existing.name:
                await self._ensure_name_available(values["name"], exclude_id=backend_id)
            await self.db.execute(
                storage_backends.update().where(storage_backends.c.id == backend_id).values(**values)
            )
            return existing

        existing = await run_in_transaction(self.db, _update)
        logger.info(f"Updated storage backend {backend_id}: {sorted(fields)}")
        if existing.role is not None:
            await self._invalidate(existing.role, backend_id, "update")
        return await self.get_backend(backend_id, decrypt=False)

    async def delete_backend(self, backend_id: int) -> None:
        """
        Delete a backend that holds no files. Pending upload sessions targeting it are dropped.

        Raises:
            StorageBackendNotFound: If no backend has this id
            StorageBackendHasFiles: If the backend still holds files
        """

        async def _delete():
            existing = await self.get_backend(backend_id, decrypt=False)
            files = await self.count_files(backend_id)
            if files:
                raise StorageBackendHasFiles(backend_id=str(backend_id), files=files)
            await self.db.execute(upload_sessions.delete().where(upload_sessions.c.storage_id == backend_id))
            await self.db.execute(storage_backends.delete().where(storage_backends.c.id == backend_id))
            return existing

        existing = await run_in_transaction(self.db, _delete)
        logger.info(f"Deleted storage backend {backend_id} ({existing.name})")
        if existing.role is not None:
            await self._invalidate(existing.role, backend_id, "delete")

    # =========================================================================
    # Roles
    # =========================================================================

    async def assign_role(self, backend_id: int, role: StorageRole) -> StorageBackend:
        """
        Designate a backend for a role.

        The source role is a pool shared by many backends. Image roles are held by
        one backend: assigning one moves it away from its previous holder, whose
        existing files keep referencing it.

        Raises:
            StorageBackendHasFiles: If the backend holds files under a different role
        """

        async def _assign():
            existing = await self.get_backend(backend_id, decrypt=False)
            if existing.role == role:
                return existing
            if existing.role is not None:
                files = await self.count_files(backend_id)
                if files:
                    raise StorageBackendHasFiles(backend_id=str(backend_id), files=files)
            if role.is_pinned:
                await self._take_pinned_role(role, backend_id)
            await self.db.execute(
                storage_backends.update()
                .where(storage_backends.c.id == backend_id)
                .values(role=role.value, updated_at=utcnow())
            )
            return existing

        existing = await run_in_transaction(self.db, _assign)
        if existing.role != role:
            logger.info(f"Assigned role {role.value} to storage backend {backend_id}")
            if existing.role is not None:
                await self._invalidate(existing.role, backend_id, "clear")
            await self._invalidate(role, backend_id, "assign")
        return await self.get_backend(backend_id, decrypt=False)

    async def clear_role(self, backend_id: int) -> StorageBackend:
        """
        Retire a backend from its role.

        Raises:
            StorageBackendHasFiles: If the backend still holds files
        """

        async def _clear():
            existing = await self.get_backend(backend_id, decrypt=False)
            if existing.role is None:
                return existing
            files = await self.count_files(backend_id)
            if files:
                raise StorageBackendHasFiles(backend_id=str(backend_id), files=files)
            await self.db.execute(
                storage_backends.update()
                .where(storage_backends.c.id == backend_id)
                .values(role=None, updated_at=utcnow())
            )
            return existing

        existing = await run_in_transaction(self.db, _clear)
        if existing.role is not None:
            logger.info(f"Cleared role {existing.role.value} from storage backend {backend_id}")
            await self._invalidate(existing.role, backend_id, "clear")
        return await self.get_backend(backend_id, decrypt=False)

    async def _invalidate(self, role: StorageRole, backend_id: int, reason: str) -> None:
        self.role_cache.invalidate(role)
        await Publisher.publish_role_cache_invalidated(role.value, backend_id, reason)

    # =========================================================================
    # Tokens
    # =========================================================================

    async def save_tokens(self, backend: StorageBackend, tokens: TokenSet) -> None:
        """Persist a refreshed token pair (last write wins) and drop cached resolutions of the backend's role."""
        values = {"access_token": tokens.access_token, "expiry": tokens.expiry, "updated_at": utcnow()}
        if tokens.refresh_token:
            values["refresh_token_encrypted"] = self.vault.encrypt(tokens.refresh_token)
        await db_execute_with_retry(
            self.db, storage_backends.update().where(storage_backends.c.id == backend.id).values(**values)
        )
        if backend.role is not None:
            await self._invalidate(backend.role, backend.id, "token")

    # =========================================================================
    # Usage accounting
    # =========================================================================

    async def increment_used(self, backend_id: int, amount: int = 1) -> None:
        await self.db.execute(
            storage_backends.update()
            .where(storage_backends.c.id == backend_id)
            .values(used=storage_backends.c.used + amount)
        )

    async def add_file(self, backend_id: int, file_id, size: int) -> None:
        """Record a file on a backend and add its size to the usage counter."""
        await self.db.execute(
            storage_backend_files.insert().values(
                backend_id=backend_id, file_id=str(file_id), size=size, created_at=utcnow()
            )
        )
        await self.increment_used(backend_id, size)

    async def remove_file(self, backend_id: int, file_id) -> int:
        """
        Forget a file and subtract its size from the usage counter (never below zero).

        Returns:
            The size that was released, 0 if the file was not recorded
        """
        row = await self.db.fetch_one(
            sa.select(storage_backend_files.c.size)
            .where(storage_backend_files.c.backend_id == backend_id)
            .where(storage_backend_files.c.file_id == str(file_id))
        )
        if row is None:
            return 0
        size = row["size"] or 0
        await self.db.execute(
            storage_backend_files.delete()
            .where(storage_backend_files.c.backend_id == backend_id)
            .where(storage_backend_files.c.file_id == str(file_id))
        )
        used = storage_backends.c.used
        await self.db.execute(
            storage_backends.update()
            .where(storage_backends.c.id == backend_id)
            .values(used=sa.case((used > size, used - size), else_=0))
        )
        return size
