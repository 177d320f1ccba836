"""
Uniform interface over third-party storage backends.

Every adapter shares one request skeleton (``_request``):

- Before the first call of an operation the access token is refreshed if it is
  missing or expired.
- The first authorization failure in an operation triggers exactly one token
  refresh and a retry of the same call. A second one is fatal.
- A provider rate-limit signal raises BackendRateLimited (never retried).
- Transport errors and 5xx responses are retried with a fixed delay, but only
  for calls that opt into a retry budget (deletes, lookups).
- Everything else outside 2xx raises BackendRequestFailed.

Adapters supply the token endpoint, the provider specific request shapes and,
where a provider deviates from plain HTTP semantics, the response
classification hooks (``_is_unauthorized``, ``_is_rate_limited``,
``_is_not_found``).
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from api.common import utcnow
from api.errors import (
    BackendRateLimited,
    BackendRequestFailed,
    BackendUnauthorized,
    MediaStoreError,
    truncate_error,
)
from api.metrics import (
    BACKEND_REQUEST_DURATION_SECONDS,
    BACKEND_REQUESTS_TOTAL,
    TOKEN_REFRESH_TOTAL,
)
from api.models import StorageBackend, TokenSet
from api.vault import CredentialVault, get_vault
from config import (
    ADAPTER_RETRY_ATTEMPTS,
    ADAPTER_RETRY_DELAY,
    ADAPTER_TIMEOUT,
    ERROR_SUMMARY_MAX_LENGTH,
    TOKEN_EXPIRY_MARGIN,
)

logger = logging.getLogger(__name__)

# Persists refreshed tokens (StorageRegistry.save_tokens)
TokenSaver = Callable[[StorageBackend, TokenSet], Awaitable[None]]


@dataclass
class RemoteFile:
    """A file as reported by a backend."""

    remote_id: str
    name: str
    size: int
    mime_type: Optional[str] = None
    # Provider supplied public link (image hosts, shared links)
    url: Optional[str] = None


@dataclass
class UploadTarget:
    """Where a client uploads the bytes of a resumable upload."""

    upload_url: str
    backend_id: int


@dataclass
class Operation:
    """Per-operation auth state: at most one unauthorized-triggered refresh."""

    refreshed: bool = False


class BackendAdapter(ABC):
    """Base class for storage backend adapters."""

    #: OAuth token endpoint, None for backends without token refresh
    token_url: Optional[str] = None
    #: Provider returns a new refresh token with every refresh
    rotates_refresh_token: bool = False

    def __init__(
        self,
        backend: StorageBackend,
        save_tokens: Optional[TokenSaver] = None,
        client: Optional[httpx.AsyncClient] = None,
        vault: Optional[CredentialVault] = None,
        retry_attempts: int = ADAPTER_RETRY_ATTEMPTS,
        retry_delay: float = ADAPTER_RETRY_DELAY,
    ):
        """
        Args:
            backend: The backend instance this adapter talks to
            save_tokens: Callback persisting refreshed tokens, None keeps them in memory
            client: Shared HTTP client; one is created (and owned) when omitted
            vault: Credential vault used to decrypt the backend's secrets
            retry_attempts: Retry budget for calls that opt into retries
            retry_delay: Fixed delay between retries (seconds)
        """
        self.backend = backend
        self._save_tokens = save_tokens
        self._vault = vault
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=ADAPTER_TIMEOUT)
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay

    @property
    def kind(self) -> str:
        return self.backend.kind.value

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            self._vault = get_vault()
        return self._vault

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "BackendAdapter":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # =========================================================================
    # Token lifecycle
    # =========================================================================

    async def ensure_token(self) -> None:
        """Refresh proactively when the access token is unset or expired."""
        if self.backend.token_expired:
            await self.refresh_token(trigger="expired")

    async def refresh_token(self, trigger: str = "expired") -> TokenSet:
        """
        Obtain a new access token and persist it.

        Args:
            trigger: What caused the refresh (expired, unauthorized, sweep), for metrics

        Returns:
            The new token set

        Raises:
            BackendRequestFailed: If the provider rejected the refresh
            BackendRateLimited: If the provider rate limited the refresh
        """
        self.vault.decrypt(self.backend)
        try:
            tokens = await self._request_token()
        except MediaStoreError:
            TOKEN_REFRESH_TOTAL.labels(kind=self.kind, trigger=trigger, result="failed").inc()
            raise

        self.backend.apply_tokens(tokens)
        if self._save_tokens is not None:
            await self._save_tokens(self.backend, tokens)
        TOKEN_REFRESH_TOTAL.labels(kind=self.kind, trigger=trigger, result="success").inc()
        logger.info(f"Refreshed access token of storage backend {self.backend.id} ({self.kind}, {trigger})")
        return tokens

    async def _request_token(self) -> TokenSet:
        """Standard OAuth2 refresh_token grant (form encoded)."""
        data = {
            "client_id": self.backend.client_id,
            "client_secret": self.backend.client_secret,
            "refresh_token": self.backend.refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            response = await self._client.post(self.token_url, data=data)
        except httpx.TransportError as e:
            raise BackendRequestFailed(f"Token refresh failed: {e}", backend_id=str(self.backend.id)) from e

        if self._is_rate_limited(response):
            raise BackendRateLimited(backend_id=str(self.backend.id))
        if not response.is_success:
            logger.warning(
                f"Token refresh of storage backend {self.backend.id} returned {response.status_code}: "
                f"{truncate_error(response.text, ERROR_SUMMARY_MAX_LENGTH)}"
            )
            raise BackendRequestFailed(
                f"Received {response.status_code} error from third party api",
                upstream_status=response.status_code,
                backend_id=str(self.backend.id),
            )
        return self._parse_token_response(response.json())

    def _parse_token_response(self, payload: Dict[str, Any]) -> TokenSet:
        expires_in = int(payload.get("expires_in", 3600))
        return TokenSet(
            access_token=payload["access_token"],
            expiry=utcnow() + timedelta(seconds=max(0, expires_in - TOKEN_EXPIRY_MARGIN)),
            refresh_token=payload.get("refresh_token") if self.rotates_refresh_token else None,
        )

    # =========================================================================
    # Request skeleton
    # =========================================================================

    async def _start(self) -> Operation:
        await self.ensure_token()
        return Operation()

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.backend.access_token}"}

    def _is_unauthorized(self, response: httpx.Response) -> bool:
        return response.status_code == 401

    def _is_rate_limited(self, response: httpx.Response) -> bool:
        return response.status_code == 429

    def _is_not_found(self, response: httpx.Response) -> bool:
        return response.status_code == 404

    async def _request(
        self,
        op: Operation,
        method: str,
        url: str,
        *,
        allow_not_found: bool = False,
        retry: bool = False,
        authorized: bool = True,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> Optional[httpx.Response]:
        """
        Send one logical request through the shared auth/retry policy.

        Args:
            op: Operation state from ``_start()``
            method: HTTP method
            url: Absolute URL
            allow_not_found: Return None instead of failing when the file is missing
            retry: Use the bounded retry budget for transport errors and 5xx
            authorized: Attach the bearer token (False for pre-authorized upload URLs)
            headers: Extra request headers
            **kwargs: Passed to ``httpx.AsyncClient.request``

        Returns:
            The successful response, or None for a tolerated not-found

        Raises:
            BackendRequestFailed: Non-2xx response, exhausted retries or repeated auth failure
            BackendRateLimited: Provider rate limit
        """
        retries = self.retry_attempts if retry else 0
        attempt = 0

        while True:
            request_headers = dict(headers or {})
            if authorized:
                request_headers.update(self._auth_headers())

            start_time = time.monotonic()
            try:
                response = await self._client.request(method, url, headers=request_headers, **kwargs)
            except httpx.TransportError as e:
                BACKEND_REQUESTS_TOTAL.labels(kind=self.kind, result="error").inc()
                if attempt < retries:
                    attempt += 1
                    logger.warning(
                        f"{method} {url} failed ({e}), retrying in {self.retry_delay}s "
                        f"(attempt {attempt}/{retries})"
                    )
                    await asyncio.sleep(self.retry_delay)
                    continue
                raise BackendRequestFailed(
                    f"Request to storage backend failed: {e}", backend_id=str(self.backend.id)
                ) from e
            finally:
                BACKEND_REQUEST_DURATION_SECONDS.labels(kind=self.kind).observe(time.monotonic() - start_time)

            if authorized and self._is_unauthorized(response):
                BACKEND_REQUESTS_TOTAL.labels(kind=self.kind, result="unauthorized").inc()
                if not op.refreshed:
                    op.refreshed = True
                    await self.refresh_token(trigger="unauthorized")
                    continue
                logger.error(f"Storage backend {self.backend.id} rejected a freshly refreshed token")
                raise BackendRequestFailed(
                    "Storage backend rejected the access token after refresh",
                    upstream_status=response.status_code,
                    backend_id=str(self.backend.id),
                ) from BackendUnauthorized(backend_id=str(self.backend.id))

            if self._is_rate_limited(response):
                BACKEND_REQUESTS_TOTAL.labels(kind=self.kind, result="rate_limited").inc()
                logger.warning(f"Storage backend {self.backend.id} rate limited {method} {url}")
                raise BackendRateLimited(backend_id=str(self.backend.id))

            if allow_not_found and self._is_not_found(response):
                BACKEND_REQUESTS_TOTAL.labels(kind=self.kind, result="not_found").inc()
                return None

            if response.status_code >= 500 and attempt < retries:
                attempt += 1
                logger.warning(
                    f"{method} {url} returned {response.status_code}, retrying in {self.retry_delay}s "
                    f"(attempt {attempt}/{retries})"
                )
                await asyncio.sleep(self.retry_delay)
                continue

            if not response.is_success:
                BACKEND_REQUESTS_TOTAL.labels(kind=self.kind, result="failed").inc()
                logger.warning(
                    f"Storage backend {self.backend.id} returned {response.status_code} for {method} {url}: "
                    f"{truncate_error(response.text, ERROR_SUMMARY_MAX_LENGTH)}"
                )
                raise BackendRequestFailed(
                    f"Received {response.status_code} error from third party api",
                    upstream_status=response.status_code,
                    backend_id=str(self.backend.id),
                )

            BACKEND_REQUESTS_TOTAL.labels(kind=self.kind, result="success").inc()
            return response

    # =========================================================================
    # Uniform operations
    # =========================================================================

    @abstractmethod
    async def upload(self, local_path: Path, name: str, mime_type: str, folder: Optional[str] = None) -> RemoteFile:
        """Upload a local file, optionally into a sub-folder of the backend's root."""

    @abstractmethod
    async def delete(self, remote_id: str) -> None:
        """Delete a file. Deleting a missing file succeeds."""

    @abstractmethod
    async def create_upload_session(self, filename: str, folder: str, size: int, mime_type: str) -> UploadTarget:
        """Create a resumable upload the client sends its bytes to directly."""

    @abstractmethod
    async def find_file(self, remote_id: str) -> RemoteFile:
        """
        Look up a file.

        Raises:
            RemoteFileNotFound: If the file does not exist
        """

    @abstractmethod
    async def delete_folder(self, folder: str) -> None:
        """Recursively delete a sub-folder of the backend's root. Missing folders succeed."""

    def public_link(self, remote: RemoteFile) -> Optional[str]:
        """Public URL for a stored file, if the backend exposes one."""
        if remote.url:
            return remote.url
        if self.backend.public_url:
            return f"{self.backend.public_url.rstrip('/')}/{remote.remote_id}"
        return None


async def read_file(path: Path) -> bytes:
    """Read a local file without blocking the event loop."""
    return await asyncio.to_thread(path.read_bytes)
