"""
In-memory records for rows the services pass around.

Rows are read with ``databases`` and converted with ``from_mapping`` so that
datetimes are normalized to UTC and enum columns become enums. Only the
StorageBackend carries mutable state (decrypted secrets, refreshed tokens).
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Mapping, Optional

from api.common import ensure_utc, is_expired
from api.enums import (
    PublicStatus,
    SourceStatus,
    StorageKind,
    StorageRole,
    StoredFileKind,
    StreamType,
)


@dataclass
class TokenSet:
    """Result of an OAuth token refresh."""

    access_token: str
    expiry: datetime
    refresh_token: Optional[str] = None


@dataclass
class StorageBackend:
    id: int
    name: str
    kind: StorageKind
    client_id: str
    client_secret_encrypted: bytes
    role: Optional[StorageRole] = None
    refresh_token_encrypted: Optional[bytes] = None
    access_token: Optional[str] = None
    expiry: Optional[datetime] = None
    folder_id: Optional[str] = None
    folder_name: Optional[str] = None
    api_url: Optional[str] = None
    public_url: Optional[str] = None
    secondary_url: Optional[str] = None
    used: int = 0
    # Populated by CredentialVault.decrypt(), never persisted
    client_secret: Optional[str] = field(default=None, repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    decrypted: bool = field(default=False, repr=False)

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "StorageBackend":
        return cls(
            id=row["id"],
            name=row["name"],
            kind=StorageKind(row["kind"]),
            role=StorageRole(row["role"]) if row["role"] else None,
            client_id=row["client_id"],
            client_secret_encrypted=row["client_secret_encrypted"],
            refresh_token_encrypted=row["refresh_token_encrypted"],
            access_token=row["access_token"],
            expiry=ensure_utc(row["expiry"]),
            folder_id=row["folder_id"],
            folder_name=row["folder_name"],
            api_url=row["api_url"],
            public_url=row["public_url"],
            secondary_url=row["secondary_url"],
            used=row["used"] or 0,
        )

    @property
    def token_expired(self) -> bool:
        return not self.access_token or is_expired(self.expiry)

    def apply_tokens(self, tokens: TokenSet) -> None:
        self.access_token = tokens.access_token
        self.expiry = tokens.expiry
        if tokens.refresh_token:
            self.refresh_token = tokens.refresh_token


@dataclass
class UploadSession:
    id: int
    filename: str
    size: int
    mime_type: str
    user_id: int
    storage_id: int
    role: StorageRole
    created_at: Optional[datetime]
    expires_at: datetime
    media_id: Optional[int] = None
    episode_id: Optional[int] = None

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "UploadSession":
        return cls(
            id=row["id"],
            filename=row["filename"],
            size=row["size"],
            mime_type=row["mime_type"],
            user_id=row["user_id"],
            storage_id=row["storage_id"],
            role=StorageRole(row["role"]),
            created_at=ensure_utc(row["created_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            media_id=row["media_id"],
            episode_id=row["episode_id"],
        )

    @property
    def folder(self) -> str:
        """Remote folder the client uploads into (named after the session)."""
        return str(self.id)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return is_expired(self.expires_at, now)


@dataclass
class StoredFile:
    id: int
    kind: StoredFileKind
    name: str
    path: str
    size: int
    storage_id: int
    remote_id: Optional[str] = None
    mime_type: Optional[str] = None
    media_id: Optional[int] = None
    episode_id: Optional[int] = None
    user_id: Optional[int] = None
    source_id: Optional[int] = None
    job_id: Optional[int] = None
    stream_type: Optional[StreamType] = None
    quality: Optional[int] = None
    codec: Optional[int] = None
    language: Optional[str] = None
    channels: Optional[int] = None

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "StoredFile":
        return cls(
            id=row["id"],
            kind=StoredFileKind(row["kind"]),
            name=row["name"],
            path=row["path"],
            size=row["size"] or 0,
            storage_id=row["storage_id"],
            remote_id=row["remote_id"],
            mime_type=row["mime_type"],
            media_id=row["media_id"],
            episode_id=row["episode_id"],
            user_id=row["user_id"],
            source_id=row["source_id"],
            job_id=row["job_id"],
            stream_type=StreamType(row["stream_type"]) if row["stream_type"] else None,
            quality=row["quality"],
            codec=row["codec"],
            language=row["language"],
            channels=row["channels"],
        )


@dataclass
class MediaItem:
    """
    A movie or an episode, addressed uniformly by the orchestrator.

    ``episode_id`` is None for movies (and for shows themselves).
    """

    media_id: int
    episode_id: Optional[int]
    source_file_id: Optional[int]
    source_status: SourceStatus
    public_status: PublicStatus
    external_stream_url: Optional[str] = None

    @property
    def is_episode(self) -> bool:
        return self.episode_id is not None

    @property
    def has_external_stream(self) -> bool:
        return bool(self.external_stream_url)

    @property
    def label(self) -> str:
        if self.episode_id is not None:
            return f"media {self.media_id} episode {self.episode_id}"
        return f"media {self.media_id}"


@dataclass
class TranscodeJob:
    id: int
    media_id: int
    episode_id: Optional[int]
    source_id: int
    storage_id: int
    user_id: int
    codec: int
    is_primary: bool
    replace_stream_ids: List[int] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "TranscodeJob":
        replace = row["replace_stream_ids"]
        return cls(
            id=row["id"],
            media_id=row["media_id"],
            episode_id=row["episode_id"],
            source_id=row["source_id"],
            storage_id=row["storage_id"],
            user_id=row["user_id"],
            codec=row["codec"],
            is_primary=bool(row["is_primary"]),
            replace_stream_ids=json.loads(replace) if replace else [],
        )
