"""
Error taxonomy for the storage, upload-session and transcode subsystem.

Every error carries an HTTP-class ``status_code`` for the controller layer and
a stable numeric ``code`` that clients use to pick a user-facing message.
Backend failures that reach callers are always one of two fatal kinds:
``BackendRequestFailed`` or ``BackendRateLimited``. ``BackendUnauthorized`` never
escapes the adapters except as the cause of a ``BackendRequestFailed``.
"""
import logging
from typing import Any, Dict, Optional

from config import ERROR_DETAIL_MAX_LENGTH

logger = logging.getLogger(__name__)


def truncate_error(error: Optional[str], max_length: int = ERROR_DETAIL_MAX_LENGTH) -> Optional[str]:
    """
    Truncate an error message to a maximum length.

    Args:
        error: Error message (may be None)
        max_length: Maximum length including the ellipsis

    Returns:
        The message, shortened with a trailing "..." if it was too long
    """
    if error is None:
        return None
    if len(error) <= max_length:
        return error
    return error[: max(0, max_length - 3)] + "..."


class MediaStoreError(Exception):
    """Base class for all errors raised by this package."""

    status_code: int = 500
    code: int = 0
    default_message: str = "Internal error"

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the controller layer."""
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.context:
            payload["context"] = self.context
        return payload


# =============================================================================
# Backend errors
# =============================================================================


class BackendError(MediaStoreError):
    """Base class for third-party storage failures."""

    status_code = 503


class BackendRequestFailed(BackendError):
    """Upstream returned a non-2xx response that is not otherwise classified."""

    code = 1100
    default_message = "Storage backend request failed"

    def __init__(self, message: Optional[str] = None, upstream_status: Optional[int] = None, **context: Any):
        super().__init__(message, upstream_status=upstream_status, **context)
        self.upstream_status = upstream_status


class BackendRateLimited(BackendError):
    """Provider signalled a rate limit. Not retried."""

    status_code = 429
    code = 1101
    default_message = "Storage backend rate limit reached, try again later"


class BackendUnauthorized(BackendError):
    """Access token rejected. Resolved by the adapter's one-shot refresh, chained as the cause otherwise."""

    status_code = 401
    code = 1102
    default_message = "Storage backend rejected the access token"


class RemoteFileNotFound(BackendError):
    """The requested file does not exist on the backend."""

    status_code = 404
    code = 802
    default_message = "File not found on storage backend"


class UnsupportedOperation(BackendError):
    """The backend kind cannot perform the requested operation."""

    status_code = 400
    code = 1103
    default_message = "Operation not supported by this storage backend"


class CredentialDecryptError(MediaStoreError):
    """Stored credentials could not be decrypted with the configured key."""

    code = 1104
    default_message = "Failed to decrypt storage credentials"


# =============================================================================
# Registry errors
# =============================================================================


class StorageBackendNotFound(MediaStoreError):
    status_code = 404
    code = 500
    default_message = "Storage backend not found"


class StorageBackendLimitReached(MediaStoreError):
    status_code = 400
    code = 501
    default_message = "Storage backend limit reached"


class StorageBackendNameExists(MediaStoreError):
    status_code = 400
    code = 502
    default_message = "A storage backend with this name already exists"


class RoleStorageNotConfigured(MediaStoreError):
    """No backend is assigned to the requested role."""

    status_code = 404
    default_message = "No storage backend is configured for this role"

    # One code per role, matching the client-side message table
    ROLE_CODES = {"poster": 503, "backdrop": 504, "source": 505, "subtitle": 506}

    def __init__(self, role: str, message: Optional[str] = None):
        super().__init__(message or f"No storage backend is configured for role '{role}'", role=role)
        self.role = role
        self.code = self.ROLE_CODES.get(role, 505)


class StorageBackendHasFiles(MediaStoreError):
    status_code = 400
    code = 507
    default_message = "Storage backend still holds files"


# =============================================================================
# Upload session errors
# =============================================================================


class UploadSessionNotFound(MediaStoreError):
    status_code = 404
    code = 801
    default_message = "Upload session not found"


class UploadSessionExpired(MediaStoreError):
    status_code = 410
    code = 805
    default_message = "Upload session has expired"


class UploadInvalid(MediaStoreError):
    """Uploaded file does not match the session it was reported against."""

    status_code = 415
    code = 803
    default_message = "Uploaded file does not match the upload session"


# =============================================================================
# Media / transcode errors
# =============================================================================


class MediaNotFound(MediaStoreError):
    status_code = 404
    code = 1000
    default_message = "Media not found"


class SourceNotFound(MediaStoreError):
    status_code = 404
    code = 804
    default_message = "Media source not found"


class SourceAlreadyExists(MediaStoreError):
    status_code = 400
    code = 806
    default_message = "Media source already exists"


class JobQueueUnavailable(MediaStoreError):
    """Transcode jobs could not be submitted to the job queue."""

    status_code = 503
    code = 1105
    default_message = "Transcode queue is unavailable"
