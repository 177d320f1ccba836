"""Adapter lookup by backend kind."""

from typing import Dict, Optional, Type

import httpx

from api.enums import StorageKind
from api.models import StorageBackend
from api.vault import CredentialVault
from storage.base import BackendAdapter, TokenSaver
from storage.cloudflare_r2 import CloudflareR2Adapter
from storage.dropbox import DropboxAdapter
from storage.google_drive import GoogleDriveAdapter
from storage.imgur import ImgurAdapter
from storage.onedrive import OneDriveAdapter

ADAPTERS: Dict[StorageKind, Type[BackendAdapter]] = {
    StorageKind.GOOGLE_DRIVE: GoogleDriveAdapter,
    StorageKind.ONEDRIVE: OneDriveAdapter,
    StorageKind.DROPBOX: DropboxAdapter,
    StorageKind.IMGUR: ImgurAdapter,
    StorageKind.CLOUDFLARE_R2: CloudflareR2Adapter,
}


def supports_token_refresh(kind: StorageKind) -> bool:
    return ADAPTERS[kind].token_url is not None


def get_adapter(
    backend: StorageBackend,
    save_tokens: Optional[TokenSaver] = None,
    client: Optional[httpx.AsyncClient] = None,
    vault: Optional[CredentialVault] = None,
) -> BackendAdapter:
    """
    Build the adapter for a backend.

    Args:
        backend: Backend loaded from the registry
        save_tokens: Callback persisting refreshed tokens
        client: Optional shared HTTP client (the adapter owns one otherwise)
        vault: Optional credential vault (process vault otherwise)

    Returns:
        An adapter bound to ``backend``; close it (or use ``async with``) when done
    """
    adapter_cls = ADAPTERS[backend.kind]
    return adapter_cls(backend, save_tokens=save_tokens, client=client, vault=vault)
