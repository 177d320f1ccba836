#!/usr/bin/env python3
"""
MediaStore CLI - manage storage backends, roles, transcoding and maintenance.
"""

import argparse
import asyncio
import logging
import mimetypes
import os
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from api.errors import MediaStoreError, truncate_error
from api.enums import StorageKind, StorageRole
from config import ERROR_DETAIL_MAX_LENGTH, ERROR_SUMMARY_MAX_LENGTH, LOG_LEVEL, METRICS_PORT

console = Console()


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def run_with_database(func: Callable[[], Awaitable[Any]]) -> Any:
    """Run an async command body with the database connected."""
    from api.database import database

    async def _run():
        await database.connect()
        try:
            return await func()
        finally:
            await database.disconnect()

    return asyncio.run(_run())


def report_error(e: Exception) -> None:
    """Print an error and exit with status 1."""
    if isinstance(e, MediaStoreError):
        print(f"Error: {truncate_error(e.message, ERROR_SUMMARY_MAX_LENGTH)} (code {e.code})")
    elif isinstance(e, ValidationError):
        print("Validation error:")
        for err in e.errors():
            field = ".".join(str(part) for part in err["loc"]) or "input"
            print(f"  {field}: {err['msg']}")
    else:
        print(f"Error: {truncate_error(str(e), ERROR_DETAIL_MAX_LENGTH)}")
    sys.exit(1)


def _backend_fields(args) -> dict:
    fields = {}
    for name in ("name", "client_id", "client_secret", "refresh_token", "folder_id", "folder_name",
                 "api_url", "public_url", "secondary_url"):
        value = getattr(args, name, None)
        if value is not None:
            fields[name] = value
    return fields


def print_backends(backends) -> None:
    if not backends:
        print("No storage backends registered.")
        return

    table = Table(title="Storage backends")
    table.add_column("ID", no_wrap=True)
    table.add_column("Name")
    table.add_column("Kind")
    table.add_column("Role")
    table.add_column("Used", justify="right")
    table.add_column("Token expiry")
    for b in backends:
        table.add_row(
            str(b.id),
            b.name,
            b.kind.value,
            b.role.value if b.role else "-",
            str(b.used),
            b.expiry.isoformat(timespec="seconds") if b.expiry else "-",
        )
    console.print(table)


def cmd_backend(args):
    """Storage backend management commands."""
    from api.registry import StorageRegistry
    from api.schemas import BackendCreate, BackendUpdate

    registry = StorageRegistry()

    try:
        if args.backend_command == "list":
            role = StorageRole(args.role) if args.role else None
            backends = run_with_database(lambda: registry.list_backends(role))
            print_backends(backends)

        elif args.backend_command == "add":
            fields = _backend_fields(args)
            fields["client_secret"] = fields.get("client_secret") or os.getenv("MEDIASTORE_CLIENT_SECRET")
            if not fields["client_secret"]:
                raise CLIError("--client-secret or MEDIASTORE_CLIENT_SECRET is required")
            data = BackendCreate(kind=args.kind, role=args.role, **fields)
            backend = run_with_database(lambda: registry.register_backend(data))
            print(f"Registered backend {backend.id} ({backend.kind.value}, role={backend.role.value if backend.role else '-'})")

        elif args.backend_command == "update":
            data = BackendUpdate(**_backend_fields(args))
            backend = run_with_database(lambda: registry.update_backend(args.backend_id, data))
            print(f"Updated backend {backend.id}")

        elif args.backend_command == "remove":
            run_with_database(lambda: registry.delete_backend(args.backend_id))
            print(f"Removed backend {args.backend_id}")

    except (MediaStoreError, ValidationError) as e:
        report_error(e)
    except CLIError as e:
        print(f"Error: {e}")
        sys.exit(1)


def cmd_role(args):
    """Role assignment commands."""
    from api.registry import StorageRegistry

    registry = StorageRegistry()
    try:
        if args.role_command == "assign":
            backend = run_with_database(lambda: registry.assign_role(args.backend_id, StorageRole(args.role)))
            print(f"Backend {backend.id} now serves role '{args.role}'")
        elif args.role_command == "clear":
            run_with_database(lambda: registry.clear_role(args.backend_id))
            print(f"Cleared role of backend {args.backend_id}")
    except MediaStoreError as e:
        report_error(e)


def cmd_image(args):
    """Upload or delete poster, backdrop and subtitle images."""
    from api.selector import StorageSelector

    selector = StorageSelector()
    role = StorageRole(args.role)
    try:
        if args.image_command == "upload":
            path = Path(args.file)
            if not path.is_file():
                raise CLIError(f"File not found: {path}")
            mime_type = args.mime_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"

            with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}")) as progress:
                progress.add_task(f"Uploading {path.name} ({role.value})", total=None)
                result = run_with_database(
                    lambda: selector.upload_image(role, path, args.name or path.name, mime_type)
                )
            print(f"Uploaded {path.name}: remote_id={result.remote_id} size={result.size}")
            if result.url:
                print(f"  URL: {result.url}")

        elif args.image_command == "delete":
            run_with_database(lambda: selector.delete_image(role, args.remote_id, args.backend_id))
            print(f"Deleted {role.value} {args.remote_id}")

    except MediaStoreError as e:
        report_error(e)
    except CLIError as e:
        print(f"Error: {e}")
        sys.exit(1)


def cmd_media(args):
    """Transcode management for a movie or an episode."""
    from api.media_state import MediaStateMachine
    from api.orchestrator import TranscodeOrchestrator
    from api.schemas import TranscodeOptions

    orchestrator = TranscodeOrchestrator()
    try:
        if args.media_command == "status":

            async def _status():
                item = await orchestrator.get_item(args.media_id, args.episode)
                jobs = await orchestrator.list_jobs(args.media_id, args.episode)
                streams = await orchestrator.list_streams(item.source_file_id) if item.source_file_id else []
                return item, jobs, streams

            item, jobs, streams = run_with_database(_status)
            print(f"{item.label}")
            print(f"  Source: {item.source_file_id or '-'} ({item.source_status.value})")
            print(f"  Public: {item.public_status.value}")
            print(f"  In-flight jobs: {len(jobs)}")
            for job in jobs:
                print(f"    {job.id} codec={job.codec}{' (primary)' if job.is_primary else ''}")
            print(f"  Streams: {len(streams)}")
            for problem in MediaStateMachine.violations(item, len(streams)):
                print(f"  Inconsistent: {problem}")

        elif args.media_command == "reencode":
            options = TranscodeOptions(video_codecs=args.codecs, queue_priority=args.priority)
            jobs = run_with_database(
                lambda: orchestrator.encode_existing_source(args.media_id, args.episode, options)
            )
            print(f"Enqueued {len(jobs)} job(s): {', '.join(str(job.id) for job in jobs)}")

        elif args.media_command == "delete-source":
            run_with_database(lambda: orchestrator.delete_source(args.media_id, args.episode))
            print(f"Deleted source of media {args.media_id}")

    except (MediaStoreError, ValidationError) as e:
        report_error(e)


def cmd_sweep(args):
    """Run a maintenance sweep once."""
    if args.sweep_command == "tokens":
        from api.registry import StorageRegistry
        from worker.maintenance import refresh_expired_tokens

        count = run_with_database(lambda: refresh_expired_tokens(StorageRegistry()))
        print(f"Refreshed {count} backend token(s)")
    elif args.sweep_command == "sessions":
        from api.upload_sessions import UploadSessionManager

        count = run_with_database(lambda: UploadSessionManager().sweep_expired_sessions())
        print(f"Removed {count} expired upload session(s)")


def cmd_run(args):
    """Run a long-lived service process."""
    from api.metrics import start_metrics_server

    port = args.metrics_port if args.metrics_port is not None else METRICS_PORT
    if start_metrics_server(port):
        print(f"Serving metrics on port {port}")

    if args.service == "maintenance":
        from worker.maintenance import run_maintenance

        asyncio.run(run_maintenance())
    elif args.service == "results":
        from worker.result_consumer import run_result_consumer

        asyncio.run(run_result_consumer(args.consumer_name))


def _add_backend_options(parser: argparse.ArgumentParser, creating: bool) -> None:
    parser.add_argument("-n", "--name", required=creating, help="Unique backend name")
    parser.add_argument("--client-id", required=creating, help="OAuth client id (access key id for R2)")
    parser.add_argument("--client-secret", help="OAuth client secret (secret access key for R2)")
    parser.add_argument("--refresh-token", help="OAuth refresh token")
    parser.add_argument("--folder-id", help="Root folder, album or bucket")
    parser.add_argument("--folder-name", help="Display name of the root folder")
    parser.add_argument("--api-url", help="Endpoint override (R2 account endpoint)")
    parser.add_argument("--public-url", help="Base URL for public links")
    parser.add_argument("--secondary-url", help="Secondary public URL")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mediastore", description="MediaStore CLI - storage and transcoding")
    subparsers = parser.add_subparsers(dest="command", required=True)
    roles = [role.value for role in StorageRole]
    image_roles = [role.value for role in StorageRole if role.is_pinned]

    # Backend management
    backend_parser = subparsers.add_parser("backend", help="Manage storage backends")
    backend_subparsers = backend_parser.add_subparsers(dest="backend_command", required=True)

    backend_list = backend_subparsers.add_parser("list", help="List storage backends")
    backend_list.add_argument("-r", "--role", choices=roles, help="Filter by role")

    backend_add = backend_subparsers.add_parser("add", help="Register a storage backend")
    backend_add.add_argument("kind", choices=[kind.value for kind in StorageKind], help="Provider")
    backend_add.add_argument("-r", "--role", choices=roles, help="Role to serve")
    _add_backend_options(backend_add, creating=True)

    backend_update = backend_subparsers.add_parser("update", help="Update a storage backend")
    backend_update.add_argument("backend_id", type=positive_int, help="Backend ID")
    _add_backend_options(backend_update, creating=False)

    backend_remove = backend_subparsers.add_parser("remove", help="Remove a storage backend without files")
    backend_remove.add_argument("backend_id", type=positive_int, help="Backend ID")

    backend_parser.set_defaults(func=cmd_backend)

    # Role assignment
    role_parser = subparsers.add_parser("role", help="Assign or clear backend roles")
    role_subparsers = role_parser.add_subparsers(dest="role_command", required=True)
    role_assign = role_subparsers.add_parser("assign", help="Assign a role to a backend")
    role_assign.add_argument("backend_id", type=positive_int, help="Backend ID")
    role_assign.add_argument("role", choices=roles, help="Role")
    role_clear = role_subparsers.add_parser("clear", help="Clear the role of a backend")
    role_clear.add_argument("backend_id", type=positive_int, help="Backend ID")
    role_parser.set_defaults(func=cmd_role)

    # Images
    image_parser = subparsers.add_parser("image", help="Upload or delete images")
    image_subparsers = image_parser.add_subparsers(dest="image_command", required=True)
    image_upload = image_subparsers.add_parser("upload", help="Upload an image to its role backend")
    image_upload.add_argument("role", choices=image_roles, help="Image role")
    image_upload.add_argument("file", help="Image file")
    image_upload.add_argument("--name", help="Stored file name (default: local file name)")
    image_upload.add_argument("--mime-type", help="Content type (default: guessed)")
    image_delete = image_subparsers.add_parser("delete", help="Delete an image")
    image_delete.add_argument("role", choices=image_roles, help="Image role")
    image_delete.add_argument("remote_id", help="Backend file id")
    image_delete.add_argument("--backend-id", type=positive_int, help="Backend holding the image")
    image_parser.set_defaults(func=cmd_image)

    # Media transcoding
    media_parser = subparsers.add_parser("media", help="Inspect and control transcoding")
    media_subparsers = media_parser.add_subparsers(dest="media_command", required=True)
    for name, help_text in (
        ("status", "Show processing state, in-flight jobs and state inconsistencies"),
        ("reencode", "Re-run transcoding from the committed source"),
        ("delete-source", "Delete the source, its renditions and cancel its jobs"),
    ):
        sub = media_subparsers.add_parser(name, help=help_text)
        sub.add_argument("media_id", type=positive_int, help="Movie or show ID")
        sub.add_argument("-e", "--episode", type=positive_int, help="Episode ID")
        if name == "reencode":
            sub.add_argument("--codecs", type=positive_int, help="Codec bitmask (1=H264, 2=VP9, 4=AV1)")
            sub.add_argument("--priority", type=positive_int, help="Queue priority")
    media_parser.set_defaults(func=cmd_media)

    # One-off sweeps
    sweep_parser = subparsers.add_parser("sweep", help="Run a maintenance sweep once")
    sweep_parser.add_argument("sweep_command", choices=["tokens", "sessions"], help="What to sweep")
    sweep_parser.set_defaults(func=cmd_sweep)

    # Services
    run_parser = subparsers.add_parser("run", help="Run a service process")
    run_parser.add_argument("service", choices=["maintenance", "results"], help="Service to run")
    run_parser.add_argument("--consumer-name", help="Consumer name for the results service")
    run_parser.add_argument(
        "--metrics-port", type=int, help="Prometheus port (default: MEDIASTORE_METRICS_PORT, 0 disables)"
    )
    run_parser.set_defaults(func=cmd_run)

    return parser


def main(argv: Optional[list] = None):
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    parser = build_parser()
    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
