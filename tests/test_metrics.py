"""Tests for Prometheus metrics functionality."""

from unittest.mock import patch

from prometheus_client import generate_latest


class TestMetricsModule:
    """Tests for the metrics module."""

    def test_registry_contains_expected_metrics(self):
        """Test that the default registry exposes the subsystem's metric names."""
        import api.metrics  # noqa: F401

        metrics = generate_latest()

        assert b"mediastore_backend_requests_total" in metrics
        assert b"mediastore_transcode_jobs_total" in metrics
        assert b"mediastore_upload_sessions_total" in metrics
        assert b"mediastore_redis_circuit_breaker_state" in metrics

    def test_init_app_info(self):
        """Test that app info carries the version."""
        from api.metrics import init_app_info

        init_app_info("1.2.3")

        assert b'version="1.2.3"' in generate_latest()


class TestMetricsServer:
    """Tests for start_metrics_server."""

    def test_port_zero_disables(self):
        from api.metrics import start_metrics_server

        with patch("api.metrics.start_http_server") as server:
            assert start_metrics_server(0) is False
        server.assert_not_called()

    def test_starts_http_server(self):
        from api.metrics import start_metrics_server

        with patch("api.metrics.start_http_server") as server:
            assert start_metrics_server(9108) is True
        server.assert_called_once_with(9108)
