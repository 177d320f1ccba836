"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum, IntFlag
from typing import List


class StorageKind(str, Enum):
    """Supported third-party storage providers."""

    GOOGLE_DRIVE = "google_drive"
    ONEDRIVE = "onedrive"
    DROPBOX = "dropbox"
    IMGUR = "imgur"
    CLOUDFLARE_R2 = "cloudflare_r2"


class StorageRole(str, Enum):
    """Logical purpose a backend instance is assigned to serve."""

    SOURCE = "source"
    POSTER = "poster"
    BACKDROP = "backdrop"
    SUBTITLE = "subtitle"

    @property
    def is_pinned(self) -> bool:
        """Image roles resolve to a single backend; the source role is a pool."""
        return self is not StorageRole.SOURCE


class SourceStatus(str, Enum):
    """Processing status of a media item's source."""

    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    DONE = "done"


class PublicStatus(str, Enum):
    """Public availability of a media item or episode."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"


class StoredFileKind(str, Enum):
    SOURCE = "source"
    STREAM = "stream"
    ASSET = "asset"


class StreamType(str, Enum):
    """What a rendition contains."""

    VIDEO = "video"
    AUDIO = "audio"
    MANIFEST = "manifest"


class VideoCodec(IntFlag):
    """Codec bitmask. Declaration order is the job priority order."""

    H264 = 1
    VP9 = 2
    AV1 = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_mask(cls, mask: int) -> List["VideoCodec"]:
        """Expand a bitmask into codecs in priority order."""
        return [codec for codec in (cls.H264, cls.VP9, cls.AV1) if mask & codec]


class AudioCodec(IntFlag):
    """Audio codec bitmask for renditions."""

    AAC = 1
    OPUS = 2

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_mask(cls, mask: int) -> List["AudioCodec"]:
        return [codec for codec in (cls.AAC, cls.OPUS) if mask & codec]


class JobOutcomeType(str, Enum):
    """Result record types reported by transcode workers."""

    UPDATE_SOURCE = "update-source"
    ADD_STREAM_VIDEO = "add-stream-video"
    ADD_STREAM_AUDIO = "add-stream-audio"
    ADD_STREAM_MANIFEST = "add-stream-manifest"
    FINISHED = "finished-encoding"
    CANCELLED = "cancelled-encoding"
    RETRY = "retry-encoding"
    FAILED = "failed-encoding"
