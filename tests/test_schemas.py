"""Tests for request model validation."""

import pytest
from pydantic import ValidationError

from api.enums import StorageKind, StorageRole
from api.schemas import (
    MAX_QUEUE_PRIORITY,
    BackendCreate,
    BackendUpdate,
    TranscodeOptions,
    UploadSessionCreate,
)


class TestTranscodeOptions:
    """Tests for TranscodeOptions validation."""

    def test_defaults(self):
        options = TranscodeOptions()
        assert options.video_codecs is None
        assert options.queue_priority is None
        assert options.override_settings == []

    def test_tracks_sorted_and_deduplicated(self):
        options = TranscodeOptions(select_audio_tracks=[2, 0, 2], force_video_quality=[1080, 480, 1080])
        assert options.select_audio_tracks == [0, 2]
        assert options.force_video_quality == [480, 1080]

    def test_negative_track_rejected(self):
        with pytest.raises(ValidationError):
            TranscodeOptions(extra_audio_tracks=[-1])

    def test_zero_quality_rejected(self):
        with pytest.raises(ValidationError):
            TranscodeOptions(force_video_quality=[0])

    def test_h264_tune_normalized(self):
        assert TranscodeOptions(h264_tune=" Film ").h264_tune == "film"

    def test_unknown_tune_rejected(self):
        with pytest.raises(ValidationError, match="Invalid h264 tune"):
            TranscodeOptions(h264_tune="cinematic")

    def test_audio_only_and_video_only_exclusive(self):
        with pytest.raises(ValidationError):
            TranscodeOptions(audio_only=True, video_only=True)

    def test_codec_mask_bounds(self):
        assert TranscodeOptions(video_codecs=7).video_codecs == 7
        with pytest.raises(ValidationError):
            TranscodeOptions(video_codecs=8)
        with pytest.raises(ValidationError):
            TranscodeOptions(video_codecs=0)

    def test_queue_priority_bounds(self):
        assert TranscodeOptions(queue_priority=MAX_QUEUE_PRIORITY).queue_priority == MAX_QUEUE_PRIORITY
        with pytest.raises(ValidationError):
            TranscodeOptions(queue_priority=MAX_QUEUE_PRIORITY + 1)

    def test_override_settings(self):
        options = TranscodeOptions(override_settings=[{"quality": 720, "crf": 20}])
        assert options.override_settings[0].crf == 20
        with pytest.raises(ValidationError):
            TranscodeOptions(override_settings=[{"quality": 720, "crf": 64}])


class TestBackendCreate:
    """Tests for BackendCreate validation."""

    def test_oauth_backend_requires_refresh_token(self):
        with pytest.raises(ValidationError, match="refresh_token"):
            BackendCreate(name="drive", kind=StorageKind.GOOGLE_DRIVE, client_id="id", client_secret="s")

    def test_oauth_backend(self):
        backend = BackendCreate(
            name="  drive  ",
            kind=StorageKind.ONEDRIVE,
            client_id="id",
            client_secret="s",
            refresh_token="r",
            role=StorageRole.SOURCE,
            public_url="https://cdn.example.com/",
        )
        assert backend.name == "drive"
        assert backend.public_url == "https://cdn.example.com"

    def test_r2_requires_endpoint_and_bucket(self):
        with pytest.raises(ValidationError, match="cloudflare_r2"):
            BackendCreate(name="r2", kind=StorageKind.CLOUDFLARE_R2, client_id="key", client_secret="s")

    def test_r2_without_refresh_token(self):
        backend = BackendCreate(
            name="r2",
            kind=StorageKind.CLOUDFLARE_R2,
            client_id="key",
            client_secret="s",
            api_url="https://account.r2.cloudflarestorage.com",
            folder_id="bucket",
        )
        assert backend.refresh_token is None

    def test_blank_name_rejected(self):
        with pytest.raises(ValidationError):
            BackendCreate(name="   ", kind=StorageKind.DROPBOX, client_id="id", client_secret="s", refresh_token="r")

    def test_update_blank_url_becomes_none(self):
        assert BackendUpdate(public_url="  ").public_url is None


class TestUploadSessionCreate:
    """Tests for UploadSessionCreate validation."""

    def test_source_requires_media(self):
        with pytest.raises(ValidationError, match="media_id"):
            UploadSessionCreate(filename="a.mkv", size=10, mime_type="video/x-matroska")

    def test_episode_requires_media(self):
        with pytest.raises(ValidationError):
            UploadSessionCreate(
                filename="a.srt", size=10, mime_type="text/plain", role=StorageRole.SUBTITLE, episode_id=1
            )

    def test_path_in_filename_rejected(self):
        with pytest.raises(ValidationError):
            UploadSessionCreate(filename="../a.mkv", size=10, mime_type="video/x-matroska", media_id=1)

    def test_size_must_be_positive(self):
        with pytest.raises(ValidationError):
            UploadSessionCreate(filename="a.mkv", size=0, mime_type="video/x-matroska", media_id=1)

    def test_subtitle_without_media(self):
        session = UploadSessionCreate(filename="a.srt", size=10, mime_type="text/plain", role=StorageRole.SUBTITLE)
        assert session.media_id is None
