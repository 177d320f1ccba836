"""
Credential vault for storage backend secrets.

Client secrets and refresh tokens are stored as Fernet tokens. The Fernet key
is derived from MEDIASTORE_CRYPTO_SECRET_KEY (SHA-256, url-safe base64), so
any string of key material works.

Decryption is lazy and memoized per in-memory backend instance: a backend
loaded for one logical operation is decrypted at most once, and the plaintext
never leaves that instance. NEVER log decrypted values.
"""

import base64
import hashlib
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from api.errors import CredentialDecryptError
from config import CRYPTO_SECRET_KEY

logger = logging.getLogger(__name__)


def derive_fernet_key(secret: str) -> bytes:
    """Derive a 32-byte url-safe base64 Fernet key from arbitrary key material."""
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class CredentialVault:
    """Encrypts and decrypts backend secrets with a single process-wide key."""

    def __init__(self, secret_key: str = CRYPTO_SECRET_KEY):
        if not secret_key:
            raise ValueError("A crypto secret key is required (MEDIASTORE_CRYPTO_SECRET_KEY)")
        self._fernet = Fernet(derive_fernet_key(secret_key))

    def encrypt(self, plaintext: Optional[str]) -> Optional[bytes]:
        if plaintext is None:
            return None
        return self._fernet.encrypt(plaintext.encode("utf-8"))

    def decrypt_value(self, token: Optional[bytes]) -> Optional[str]:
        """
        Decrypt a single stored value.

        Raises:
            CredentialDecryptError: If the token was not produced with this key
        """
        if token is None:
            return None
        try:
            return self._fernet.decrypt(bytes(token)).decode("utf-8")
        except InvalidToken as e:
            raise CredentialDecryptError() from e

    def decrypt(self, backend) -> None:
        """
        Decrypt a backend's secrets in place, once per instance.

        Args:
            backend: A StorageBackend loaded from the registry
        """
        if backend.decrypted:
            return
        try:
            backend.client_secret = self.decrypt_value(backend.client_secret_encrypted)
            backend.refresh_token = self.decrypt_value(backend.refresh_token_encrypted)
        except CredentialDecryptError:
            logger.error(f"Failed to decrypt credentials of storage backend {backend.id}")
            raise
        backend.decrypted = True


_vault: Optional[CredentialVault] = None


def get_vault() -> CredentialVault:
    """Get or create the process-wide vault (key loaded once at startup)."""
    global _vault
    if _vault is None:
        _vault = CredentialVault()
    return _vault
