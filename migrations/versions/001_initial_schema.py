"""initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

Storage backends, upload sessions, media processing state, stored files and
in-flight transcode jobs.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables."""
    op.create_table(
        "storage_backends",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("role", sa.String(20), nullable=True),
        sa.Column("client_id", sa.String(255), nullable=False),
        sa.Column("client_secret_encrypted", sa.LargeBinary, nullable=False),
        sa.Column("refresh_token_encrypted", sa.LargeBinary, nullable=True),
        sa.Column("access_token", sa.Text, nullable=True),
        sa.Column("expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("folder_id", sa.String(255), nullable=True),
        sa.Column("folder_name", sa.String(255), nullable=True),
        sa.Column("api_url", sa.String(500), nullable=True),
        sa.Column("public_url", sa.String(500), nullable=True),
        sa.Column("secondary_url", sa.String(500), nullable=True),
        sa.Column("used", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint(
            "kind IN ('google_drive', 'onedrive', 'dropbox', 'imgur', 'cloudflare_r2')",
            name="ck_storage_backends_kind",
        ),
        sa.CheckConstraint(
            "role IS NULL OR role IN ('source', 'poster', 'backdrop', 'subtitle')",
            name="ck_storage_backends_role",
        ),
        sa.CheckConstraint("used >= 0", name="ck_storage_backends_used_non_negative"),
    )
    op.create_index("ix_storage_backends_role_used", "storage_backends", ["role", "used"])
    op.create_index("ix_storage_backends_expiry", "storage_backends", ["expiry"])

    op.create_table(
        "storage_backend_files",
        sa.Column(
            "backend_id",
            sa.BigInteger,
            sa.ForeignKey("storage_backends.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("file_id", sa.String(255), primary_key=True),
        sa.Column("size", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )

    op.create_table(
        "upload_sessions",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
        sa.Column("filename", sa.String(500), nullable=False),
        sa.Column("size", sa.BigInteger, nullable=False),
        sa.Column("mime_type", sa.String(255), nullable=False),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("storage_id", sa.BigInteger, sa.ForeignKey("storage_backends.id"), nullable=False),
        sa.Column("role", sa.String(20), nullable=False, server_default="source"),
        sa.Column("media_id", sa.BigInteger, nullable=True),
        sa.Column("episode_id", sa.BigInteger, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_upload_sessions_expires_at", "upload_sessions", ["expires_at"])
    op.create_index("ix_upload_sessions_user_id", "upload_sessions", ["user_id"])

    op.create_table(
        "media",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("kind", sa.String(10), nullable=False, server_default="movie"),
        sa.Column("source_file_id", sa.BigInteger, nullable=True),
        sa.Column("source_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("public_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("external_stream_url", sa.String(1000), nullable=True),
        sa.Column("public_episode_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("kind IN ('movie', 'tv')", name="ck_media_kind"),
        sa.CheckConstraint(
            "source_status IN ('pending', 'processing', 'ready', 'done')",
            name="ck_media_source_status",
        ),
        sa.CheckConstraint(
            "public_status IN ('pending', 'processing', 'done')",
            name="ck_media_public_status",
        ),
    )

    op.create_table(
        "episodes",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
        sa.Column("media_id", sa.BigInteger, sa.ForeignKey("media.id", ondelete="CASCADE"), nullable=False),
        sa.Column("episode_number", sa.Integer, nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("source_file_id", sa.BigInteger, nullable=True),
        sa.Column("source_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("public_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("external_stream_url", sa.String(1000), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint(
            "source_status IN ('pending', 'processing', 'ready', 'done')",
            name="ck_episodes_source_status",
        ),
        sa.CheckConstraint(
            "public_status IN ('pending', 'processing', 'done')",
            name="ck_episodes_public_status",
        ),
        sa.UniqueConstraint("media_id", "episode_number", name="uq_episodes_media_episode_number"),
    )
    op.create_index("ix_episodes_media_public_status", "episodes", ["media_id", "public_status"])

    op.create_table(
        "stored_files",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
        sa.Column("kind", sa.String(10), nullable=False),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("path", sa.String(500), nullable=False),
        sa.Column("remote_id", sa.String(500), nullable=True),
        sa.Column("size", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("mime_type", sa.String(255), nullable=True),
        sa.Column("storage_id", sa.BigInteger, sa.ForeignKey("storage_backends.id"), nullable=False),
        sa.Column("media_id", sa.BigInteger, nullable=True),
        sa.Column("episode_id", sa.BigInteger, nullable=True),
        sa.Column("user_id", sa.BigInteger, nullable=True),
        sa.Column("source_id", sa.BigInteger, nullable=True),
        sa.Column("job_id", sa.BigInteger, nullable=True),
        sa.Column("stream_type", sa.String(10), nullable=True),
        sa.Column("quality", sa.Integer, nullable=True),
        sa.Column("codec", sa.Integer, nullable=True),
        sa.Column("language", sa.String(20), nullable=True),
        sa.Column("channels", sa.Integer, nullable=True),
        sa.Column("duration", sa.Float, nullable=True),
        sa.Column("width", sa.Integer, nullable=True),
        sa.Column("height", sa.Integer, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("kind IN ('source', 'stream', 'asset')", name="ck_stored_files_kind"),
        sa.CheckConstraint(
            "stream_type IS NULL OR stream_type IN ('video', 'audio', 'manifest')",
            name="ck_stored_files_stream_type",
        ),
    )
    op.create_index("ix_stored_files_media_episode", "stored_files", ["media_id", "episode_id"])
    op.create_index("ix_stored_files_source_id", "stored_files", ["source_id"])

    op.create_table(
        "transcode_jobs",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
        sa.Column("media_id", sa.BigInteger, nullable=False),
        sa.Column("episode_id", sa.BigInteger, nullable=True),
        sa.Column("source_id", sa.BigInteger, nullable=False),
        sa.Column("storage_id", sa.BigInteger, nullable=False),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("codec", sa.Integer, nullable=False),
        sa.Column("is_primary", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("replace_stream_ids", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_transcode_jobs_media_episode", "transcode_jobs", ["media_id", "episode_id"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index("ix_transcode_jobs_media_episode", table_name="transcode_jobs")
    op.drop_table("transcode_jobs")
    op.drop_index("ix_stored_files_source_id", table_name="stored_files")
    op.drop_index("ix_stored_files_media_episode", table_name="stored_files")
    op.drop_table("stored_files")
    op.drop_index("ix_episodes_media_public_status", table_name="episodes")
    op.drop_table("episodes")
    op.drop_table("media")
    op.drop_index("ix_upload_sessions_user_id", table_name="upload_sessions")
    op.drop_index("ix_upload_sessions_expires_at", table_name="upload_sessions")
    op.drop_table("upload_sessions")
    op.drop_table("storage_backend_files")
    op.drop_index("ix_storage_backends_expiry", table_name="storage_backends")
    op.drop_index("ix_storage_backends_role_used", table_name="storage_backends")
    op.drop_table("storage_backends")
