"""Tests for the credential vault."""

import pytest

from api.enums import StorageKind
from api.errors import CredentialDecryptError
from api.models import StorageBackend
from api.vault import CredentialVault


def _backend(vault: CredentialVault, refresh_token="refresh") -> StorageBackend:
    return StorageBackend(
        id=1,
        name="drive",
        kind=StorageKind.GOOGLE_DRIVE,
        client_id="client",
        client_secret_encrypted=vault.encrypt("secret"),
        refresh_token_encrypted=vault.encrypt(refresh_token),
    )


class TestCredentialVault:
    """Tests for CredentialVault."""

    def test_encrypt_is_not_plaintext(self, vault):
        token = vault.encrypt("super-secret")
        assert b"super-secret" not in token
        assert vault.decrypt_value(token) == "super-secret"

    def test_none_passes_through(self, vault):
        assert vault.encrypt(None) is None
        assert vault.decrypt_value(None) is None

    def test_wrong_key_raises(self, vault):
        token = vault.encrypt("secret")
        other = CredentialVault("another-key")
        with pytest.raises(CredentialDecryptError):
            other.decrypt_value(token)

    def test_empty_key_rejected(self):
        with pytest.raises(ValueError):
            CredentialVault("")

    def test_decrypt_backend_in_place(self, vault):
        backend = _backend(vault)
        vault.decrypt(backend)
        assert backend.client_secret == "secret"
        assert backend.refresh_token == "refresh"
        assert backend.decrypted is True

    def test_decrypt_is_memoized(self, vault):
        backend = _backend(vault)
        vault.decrypt(backend)
        backend.client_secret_encrypted = b"garbage"
        # Second call does not touch the stored ciphertext again
        vault.decrypt(backend)
        assert backend.client_secret == "secret"

    def test_missing_refresh_token(self, vault):
        backend = _backend(vault, refresh_token=None)
        vault.decrypt(backend)
        assert backend.refresh_token is None

    def test_secrets_not_in_repr(self, vault):
        backend = _backend(vault)
        vault.decrypt(backend)
        assert "secret" not in repr(backend).replace("client_secret_encrypted", "")
