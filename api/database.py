from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL)
metadata = sa.MetaData()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Registered third-party storage backends.
# Secrets (client_secret, refresh_token) are Fernet tokens; see api/vault.py.
storage_backends = sa.Table(
    "storage_backends",
    metadata,
    sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
    sa.Column("name", sa.String(100), unique=True, nullable=False),
    sa.Column(
        "kind",
        sa.String(20),
        sa.CheckConstraint(
            "kind IN ('google_drive', 'onedrive', 'dropbox', 'imgur', 'cloudflare_r2')",
            name="ck_storage_backends_kind",
        ),
        nullable=False,
    ),
    sa.Column(
        "role",
        sa.String(20),
        sa.CheckConstraint(
            "role IS NULL OR role IN ('source', 'poster', 'backdrop', 'subtitle')",
            name="ck_storage_backends_role",
        ),
        nullable=True,
    ),
    sa.Column("client_id", sa.String(255), nullable=False),
    sa.Column("client_secret_encrypted", sa.LargeBinary, nullable=False),
    sa.Column("refresh_token_encrypted", sa.LargeBinary, nullable=True),
    sa.Column("access_token", sa.Text, nullable=True),
    sa.Column("expiry", sa.DateTime(timezone=True), nullable=True),
    sa.Column("folder_id", sa.String(255), nullable=True),  # Root folder / album / bucket
    sa.Column("folder_name", sa.String(255), nullable=True),
    sa.Column("api_url", sa.String(500), nullable=True),  # Endpoint override (R2 account endpoint)
    sa.Column("public_url", sa.String(500), nullable=True),  # Base URL for playback/image links
    sa.Column("secondary_url", sa.String(500), nullable=True),
    sa.Column(
        "used",
        sa.BigInteger,
        sa.CheckConstraint("used >= 0", name="ck_storage_backends_used_non_negative"),
        default=0,
        nullable=False,
    ),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Index("ix_storage_backends_role_used", "role", "used"),
    sa.Index("ix_storage_backends_expiry", "expiry"),
)

# File ids currently held by each backend (sources, renditions, images)
storage_backend_files = sa.Table(
    "storage_backend_files",
    metadata,
    sa.Column(
        "backend_id",
        sa.BigInteger,
        sa.ForeignKey("storage_backends.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    sa.Column("file_id", sa.String(255), primary_key=True),
    sa.Column("size", sa.BigInteger, default=0, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
)

# Resumable upload sessions (24h window, deleted on commit or by the daily sweep)
upload_sessions = sa.Table(
    "upload_sessions",
    metadata,
    sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
    sa.Column("filename", sa.String(500), nullable=False),
    sa.Column("size", sa.BigInteger, nullable=False),
    sa.Column("mime_type", sa.String(255), nullable=False),
    sa.Column("user_id", sa.BigInteger, nullable=False),
    sa.Column("storage_id", sa.BigInteger, sa.ForeignKey("storage_backends.id"), nullable=False),
    sa.Column("role", sa.String(20), nullable=False, default="source"),
    sa.Column("media_id", sa.BigInteger, nullable=True),
    sa.Column("episode_id", sa.BigInteger, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    sa.Index("ix_upload_sessions_expires_at", "expires_at"),
    sa.Index("ix_upload_sessions_user_id", "user_id"),
)

# Media items (processing-relevant fields only)
media = sa.Table(
    "media",
    metadata,
    sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column(
        "kind",
        sa.String(10),
        sa.CheckConstraint("kind IN ('movie', 'tv')", name="ck_media_kind"),
        default="movie",
        nullable=False,
    ),
    sa.Column("source_file_id", sa.BigInteger, nullable=True),
    sa.Column(
        "source_status",
        sa.String(20),
        sa.CheckConstraint(
            "source_status IN ('pending', 'processing', 'ready', 'done')",
            name="ck_media_source_status",
        ),
        default="pending",
        nullable=False,
    ),
    sa.Column(
        "public_status",
        sa.String(20),
        sa.CheckConstraint(
            "public_status IN ('pending', 'processing', 'done')",
            name="ck_media_public_status",
        ),
        default="pending",
        nullable=False,
    ),
    sa.Column("external_stream_url", sa.String(1000), nullable=True),
    sa.Column("public_episode_count", sa.Integer, default=0, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow),
)

episodes = sa.Table(
    "episodes",
    metadata,
    sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
    sa.Column("media_id", sa.BigInteger, sa.ForeignKey("media.id", ondelete="CASCADE"), nullable=False),
    sa.Column("episode_number", sa.Integer, nullable=False),
    sa.Column("name", sa.String(255), nullable=True),
    sa.Column("source_file_id", sa.BigInteger, nullable=True),
    sa.Column(
        "source_status",
        sa.String(20),
        sa.CheckConstraint(
            "source_status IN ('pending', 'processing', 'ready', 'done')",
            name="ck_episodes_source_status",
        ),
        default="pending",
        nullable=False,
    ),
    sa.Column(
        "public_status",
        sa.String(20),
        sa.CheckConstraint(
            "public_status IN ('pending', 'processing', 'done')",
            name="ck_episodes_public_status",
        ),
        default="pending",
        nullable=False,
    ),
    sa.Column("external_stream_url", sa.String(1000), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.UniqueConstraint("media_id", "episode_number", name="uq_episodes_media_episode_number"),
    sa.Index("ix_episodes_media_public_status", "media_id", "public_status"),
)

# Sources, renditions and committed assets
stored_files = sa.Table(
    "stored_files",
    metadata,
    sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
    sa.Column(
        "kind",
        sa.String(10),
        sa.CheckConstraint("kind IN ('source', 'stream', 'asset')", name="ck_stored_files_kind"),
        nullable=False,
    ),
    sa.Column("name", sa.String(500), nullable=False),
    sa.Column("path", sa.String(500), nullable=False),  # Folder on the backend
    sa.Column("remote_id", sa.String(500), nullable=True),  # Backend file id or key
    sa.Column("size", sa.BigInteger, default=0, nullable=False),
    sa.Column("mime_type", sa.String(255), nullable=True),
    sa.Column("storage_id", sa.BigInteger, sa.ForeignKey("storage_backends.id"), nullable=False),
    sa.Column("media_id", sa.BigInteger, nullable=True),
    sa.Column("episode_id", sa.BigInteger, nullable=True),
    sa.Column("user_id", sa.BigInteger, nullable=True),
    # Stream-only fields
    sa.Column("source_id", sa.BigInteger, nullable=True),
    sa.Column("job_id", sa.BigInteger, nullable=True),
    sa.Column(
        "stream_type",
        sa.String(10),
        sa.CheckConstraint(
            "stream_type IS NULL OR stream_type IN ('video', 'audio', 'manifest')",
            name="ck_stored_files_stream_type",
        ),
        nullable=True,
    ),
    sa.Column("quality", sa.Integer, nullable=True),
    sa.Column("codec", sa.Integer, nullable=True),
    sa.Column("language", sa.String(20), nullable=True),
    sa.Column("channels", sa.Integer, nullable=True),
    # Source-only probe info (reported by workers)
    sa.Column("duration", sa.Float, nullable=True),
    sa.Column("width", sa.Integer, nullable=True),
    sa.Column("height", sa.Integer, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Index("ix_stored_files_media_episode", "media_id", "episode_id"),
    sa.Index("ix_stored_files_source_id", "source_id"),
)

# In-flight transcode jobs. A row exists from enqueue until the job reports
# done, failed or is cancelled.
transcode_jobs = sa.Table(
    "transcode_jobs",
    metadata,
    sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
    sa.Column("media_id", sa.BigInteger, nullable=False),
    sa.Column("episode_id", sa.BigInteger, nullable=True),
    sa.Column("source_id", sa.BigInteger, nullable=False),
    sa.Column("storage_id", sa.BigInteger, nullable=False),
    sa.Column("user_id", sa.BigInteger, nullable=False),
    sa.Column("codec", sa.Integer, nullable=False),
    sa.Column("is_primary", sa.Boolean, default=False, nullable=False),
    sa.Column("replace_stream_ids", sa.Text, nullable=True),  # JSON list of stream ids to drop on finish
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Index("ix_transcode_jobs_media_episode", "media_id", "episode_id"),
)
