"""
Tests for the CLI argument parsing and error reporting.
"""

import argparse
import asyncio
from types import SimpleNamespace
from unittest import mock

import pytest
from pydantic import ValidationError

from api.enums import PublicStatus, SourceStatus, StorageKind, StorageRole
from api.errors import StorageBackendNotFound
from api.models import MediaItem
from api.schemas import BackendCreate
from cli.main import CLIError, build_parser, cmd_backend, cmd_media, cmd_role, cmd_run, positive_int, report_error


def _run_inline(func):
    return asyncio.run(func())


class TestPositiveInt:
    """Test the positive_int argparse converter."""

    def test_accepts_positive(self):
        assert positive_int("42") == 42

    @pytest.mark.parametrize("value", ["0", "-3"])
    def test_rejects_non_positive(self, value):
        with pytest.raises(argparse.ArgumentTypeError):
            positive_int(value)

    def test_rejects_non_numeric(self):
        with pytest.raises(ValueError):
            positive_int("abc")


class TestCLIError:
    """Test the CLIError exception."""

    def test_cli_error_can_be_raised(self):
        with pytest.raises(CLIError, match="Test error"):
            raise CLIError("Test error")


class TestBuildParser:
    """Test the argument parser layout."""

    def test_backend_add(self):
        args = build_parser().parse_args(
            ["backend", "add", "google_drive", "-n", "drive-1", "--client-id", "cid", "-r", "source"]
        )
        assert args.command == "backend"
        assert args.backend_command == "add"
        assert args.kind == "google_drive"
        assert args.role == "source"
        assert args.func is cmd_backend

    def test_backend_add_requires_name(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["backend", "add", "dropbox", "--client-id", "cid"])

    def test_backend_add_rejects_unknown_kind(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["backend", "add", "ftp", "-n", "x", "--client-id", "cid"])

    def test_role_assign(self):
        args = build_parser().parse_args(["role", "assign", "7", "poster"])
        assert args.backend_id == 7
        assert args.role == "poster"
        assert args.func is cmd_role

    def test_role_assign_rejects_zero_id(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["role", "assign", "0", "poster"])

    def test_image_upload_only_accepts_image_roles(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["image", "upload", "source", "movie.mkv"])
        args = build_parser().parse_args(["image", "upload", "backdrop", "b.jpg"])
        assert args.role == "backdrop"

    def test_media_reencode_options(self):
        args = build_parser().parse_args(["media", "reencode", "12", "-e", "3", "--codecs", "5", "--priority", "2"])
        assert (args.media_id, args.episode, args.codecs, args.priority) == (12, 3, 5, 2)

    def test_run_results_consumer_name(self):
        args = build_parser().parse_args(["run", "results", "--consumer-name", "results-a"])
        assert args.service == "results"
        assert args.consumer_name == "results-a"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestReportError:
    """Test error output formatting."""

    def test_media_store_error(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            report_error(StorageBackendNotFound())
        assert exc_info.value.code == 1
        assert capsys.readouterr().out.strip() == "Error: Storage backend not found (code 500)"

    def test_validation_error_lists_fields(self, capsys):
        with pytest.raises(ValidationError) as validation:
            BackendCreate(name="", kind=StorageKind.DROPBOX, client_id="c", client_secret="s", refresh_token="r")

        with pytest.raises(SystemExit):
            report_error(validation.value)

        out = capsys.readouterr().out
        assert out.startswith("Validation error:")
        assert "name:" in out

    def test_generic_error_truncated(self, capsys):
        with pytest.raises(SystemExit):
            report_error(RuntimeError("x" * 2000))
        out = capsys.readouterr().out.strip()
        assert out.endswith("...")
        assert len(out) <= len("Error: ") + 500


class TestCommands:
    """Test command handlers against a mocked registry."""

    def test_role_assign_calls_registry(self, capsys):
        registry = mock.Mock()
        registry.assign_role = mock.AsyncMock(return_value=SimpleNamespace(id=7))
        args = SimpleNamespace(role_command="assign", backend_id=7, role="poster")

        with mock.patch("api.registry.StorageRegistry", return_value=registry), mock.patch(
            "cli.main.run_with_database", side_effect=_run_inline
        ):
            cmd_role(args)

        registry.assign_role.assert_awaited_once_with(7, StorageRole.POSTER)
        assert "now serves role 'poster'" in capsys.readouterr().out

    def test_role_error_exits(self, capsys):
        registry = mock.Mock()
        registry.clear_role = mock.AsyncMock(side_effect=StorageBackendNotFound())
        args = SimpleNamespace(role_command="clear", backend_id=9)

        with mock.patch("api.registry.StorageRegistry", return_value=registry), mock.patch(
            "cli.main.run_with_database", side_effect=_run_inline
        ):
            with pytest.raises(SystemExit):
                cmd_role(args)

        assert "code 500" in capsys.readouterr().out

    def test_run_starts_metrics_then_service(self, capsys):
        args = build_parser().parse_args(["run", "maintenance", "--metrics-port", "9108"])

        with mock.patch("api.metrics.start_metrics_server", return_value=True) as metrics, mock.patch(
            "worker.maintenance.run_maintenance", new_callable=mock.AsyncMock
        ) as run_maintenance:
            cmd_run(args)

        metrics.assert_called_once_with(9108)
        run_maintenance.assert_awaited_once()
        assert "Serving metrics on port 9108" in capsys.readouterr().out

    def test_backend_add_requires_secret(self, capsys, monkeypatch):
        monkeypatch.delenv("MEDIASTORE_CLIENT_SECRET", raising=False)
        args = build_parser().parse_args(
            ["backend", "add", "dropbox", "-n", "box", "--client-id", "cid", "--refresh-token", "r"]
        )

        with mock.patch("api.registry.StorageRegistry"):
            with pytest.raises(SystemExit):
                cmd_backend(args)

        assert "--client-secret" in capsys.readouterr().out

    def test_backend_add_reads_secret_from_env(self, capsys, monkeypatch):
        monkeypatch.setenv("MEDIASTORE_CLIENT_SECRET", "from-env")
        registry = mock.Mock()
        registry.register_backend = mock.AsyncMock(
            return_value=SimpleNamespace(id=3, kind=StorageKind.DROPBOX, role=None)
        )
        args = build_parser().parse_args(
            ["backend", "add", "dropbox", "-n", "box", "--client-id", "cid", "--refresh-token", "r"]
        )

        with mock.patch("api.registry.StorageRegistry", return_value=registry), mock.patch(
            "cli.main.run_with_database", side_effect=_run_inline
        ):
            cmd_backend(args)

        data = registry.register_backend.await_args.args[0]
        assert data.client_secret == "from-env"
        assert data.name == "box"
        assert "Registered backend 3" in capsys.readouterr().out

    def test_media_status_reports_inconsistencies(self, capsys):
        item = MediaItem(
            media_id=12,
            episode_id=None,
            source_file_id=5,
            source_status=SourceStatus.READY,
            public_status=PublicStatus.DONE,
        )
        orchestrator = mock.Mock()
        orchestrator.get_item = mock.AsyncMock(return_value=item)
        orchestrator.list_jobs = mock.AsyncMock(return_value=[])
        orchestrator.list_streams = mock.AsyncMock(return_value=[])
        args = build_parser().parse_args(["media", "status", "12"])

        with mock.patch("api.orchestrator.TranscodeOrchestrator", return_value=orchestrator), mock.patch(
            "cli.main.run_with_database", side_effect=_run_inline
        ):
            cmd_media(args)

        out = capsys.readouterr().out
        orchestrator.list_streams.assert_awaited_once_with(5)
        assert "Streams: 0" in out
        assert "Inconsistent:" in out
        assert "without streams or external stream" in out
