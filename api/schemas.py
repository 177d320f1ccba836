from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from api.enums import StorageKind, StorageRole

H264_TUNES = {"film", "animation", "grain", "stillimage", "fastdecode", "zerolatency"}

MAX_QUEUE_PRIORITY = 2_000_000


# Transcode request models
class EncodingSetting(BaseModel):
    """Per-quality encoder override."""

    quality: int = Field(..., gt=0, le=4320)
    crf: Optional[int] = Field(default=None, ge=0, le=63)
    cq: Optional[int] = Field(default=None, ge=0, le=63)
    maxrate: Optional[int] = Field(default=None, gt=0)
    bufsize: Optional[int] = Field(default=None, gt=0)
    use_lower_rate: bool = False


class TranscodeOptions(BaseModel):
    select_audio_tracks: List[int] = Field(default_factory=list)
    extra_audio_tracks: List[int] = Field(default_factory=list)
    force_video_quality: List[int] = Field(default_factory=list)
    h264_tune: Optional[str] = None
    queue_priority: Optional[int] = Field(default=None, ge=1, le=MAX_QUEUE_PRIORITY)
    audio_only: bool = False
    video_only: bool = False
    # Overrides the configured codec bitmask for this request (1 = H264, 2 = VP9, 4 = AV1)
    video_codecs: Optional[int] = Field(default=None, ge=1, le=7)
    override_settings: List[EncodingSetting] = Field(default_factory=list)

    @field_validator("select_audio_tracks", "extra_audio_tracks")
    @classmethod
    def validate_tracks(cls, v: List[int]) -> List[int]:
        for track in v:
            if track < 0:
                raise ValueError("audio track indexes must be non-negative")
        return sorted(set(v))

    @field_validator("force_video_quality")
    @classmethod
    def validate_qualities(cls, v: List[int]) -> List[int]:
        for q in v:
            if q <= 0:
                raise ValueError(f"Invalid quality '{q}'")
        return sorted(set(v))

    @field_validator("h264_tune")
    @classmethod
    def validate_h264_tune(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            v = v.lower().strip()
            if v not in H264_TUNES:
                raise ValueError(f"Invalid h264 tune '{v}'. Valid options: {', '.join(sorted(H264_TUNES))}")
        return v

    @model_validator(mode="after")
    def validate_track_selection(self) -> "TranscodeOptions":
        if self.audio_only and self.video_only:
            raise ValueError("audio_only and video_only cannot both be set")
        return self


# Storage backend models
class BackendCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    kind: StorageKind
    client_id: str = Field(..., min_length=1, max_length=255)
    client_secret: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    role: Optional[StorageRole] = None
    folder_id: Optional[str] = Field(default=None, max_length=255)
    folder_name: Optional[str] = Field(default=None, max_length=255)
    api_url: Optional[str] = Field(default=None, max_length=500)
    public_url: Optional[str] = Field(default=None, max_length=500)
    secondary_url: Optional[str] = Field(default=None, max_length=500)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v

    @field_validator("public_url", "secondary_url", "api_url")
    @classmethod
    def strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            v = v.strip().rstrip("/") or None
        return v

    @model_validator(mode="after")
    def validate_credentials(self) -> "BackendCreate":
        # Static-key blob stores need no refresh token, every OAuth provider does
        if self.kind != StorageKind.CLOUDFLARE_R2 and not self.refresh_token:
            raise ValueError(f"refresh_token is required for {self.kind.value} backends")
        if self.kind == StorageKind.CLOUDFLARE_R2 and (not self.api_url or not self.folder_id):
            raise ValueError("cloudflare_r2 backends require api_url (endpoint) and folder_id (bucket)")
        return self


class BackendUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    client_id: Optional[str] = Field(default=None, min_length=1, max_length=255)
    client_secret: Optional[str] = Field(default=None, min_length=1)
    refresh_token: Optional[str] = Field(default=None, min_length=1)
    folder_id: Optional[str] = Field(default=None, max_length=255)
    folder_name: Optional[str] = Field(default=None, max_length=255)
    api_url: Optional[str] = Field(default=None, max_length=500)
    public_url: Optional[str] = Field(default=None, max_length=500)
    secondary_url: Optional[str] = Field(default=None, max_length=500)

    @field_validator("public_url", "secondary_url", "api_url")
    @classmethod
    def strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            v = v.strip().rstrip("/") or None
        return v


# Upload session models
class UploadSessionCreate(BaseModel):
    filename: str = Field(..., min_length=1, max_length=500)
    size: int = Field(..., gt=0)
    mime_type: str = Field(..., min_length=1, max_length=255)
    role: StorageRole = StorageRole.SOURCE
    media_id: Optional[int] = None
    episode_id: Optional[int] = None

    @field_validator("filename")
    @classmethod
    def validate_filename(cls, v: str) -> str:
        v = v.strip()
        if not v or "/" in v or "\\" in v:
            raise ValueError("filename must be a plain file name")
        return v

    @model_validator(mode="after")
    def validate_target(self) -> "UploadSessionCreate":
        if self.role == StorageRole.SOURCE and self.media_id is None:
            raise ValueError("media_id is required for source uploads")
        if self.episode_id is not None and self.media_id is None:
            raise ValueError("episode_id requires media_id")
        return self


class UploadSessionResponse(BaseModel):
    # Ids are serialized as strings, they exceed the JavaScript safe integer range
    session_id: str
    upload_url: str
    backend_id: str
    expires_at: datetime
