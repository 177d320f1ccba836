"""
Prometheus metrics for the storage, upload-session and transcode subsystem.

Metrics are registered on the default registry. Service processes started from
the CLI expose them over HTTP with ``start_metrics_server()``.
"""

from prometheus_client import Counter, Gauge, Histogram, Info, start_http_server

APP_INFO = Info("mediastore", "mediastore application information")

# =============================================================================
# Backend Adapter Metrics
# =============================================================================

BACKEND_REQUESTS_TOTAL = Counter(
    "mediastore_backend_requests_total",
    "Total requests sent to storage backends",
    ["kind", "result"],  # result: success, not_found, unauthorized, rate_limited, failed, error
)

BACKEND_REQUEST_DURATION_SECONDS = Histogram(
    "mediastore_backend_request_duration_seconds",
    "Storage backend request duration in seconds",
    ["kind"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 120.0],
)

TOKEN_REFRESH_TOTAL = Counter(
    "mediastore_token_refresh_total",
    "OAuth token refreshes",
    ["kind", "trigger", "result"],  # trigger: expired, unauthorized, sweep
)

# =============================================================================
# Storage Registry Metrics
# =============================================================================

STORAGE_BYTES_USED = Gauge(
    "mediastore_storage_bytes_used",
    "Bytes accounted to a backend at its last selection",
    ["backend_id"],
)

ROLE_CACHE_TOTAL = Counter(
    "mediastore_role_cache_total",
    "Role cache lookups",
    ["result"],  # hit, miss, invalidated
)

# =============================================================================
# Upload Session Metrics
# =============================================================================

UPLOAD_SESSIONS_TOTAL = Counter(
    "mediastore_upload_sessions_total",
    "Upload session lifecycle events",
    ["event"],  # created, committed, invalid, expired
)

# =============================================================================
# Transcoding Metrics
# =============================================================================

TRANSCODE_JOBS_TOTAL = Counter(
    "mediastore_transcode_jobs_total",
    "Transcode job lifecycle events",
    ["codec", "event"],  # enqueued, done, cancelled, failed, retried
)

RENDITIONS_TOTAL = Counter(
    "mediastore_renditions_total",
    "Renditions reported by transcode workers",
    ["stream_type"],
)

RENDITION_BYTES_TOTAL = Counter(
    "mediastore_rendition_bytes_total",
    "Total bytes of renditions reported by transcode workers",
)

STALE_CALLBACKS_TOTAL = Counter(
    "mediastore_stale_callbacks_total",
    "Job callbacks dropped because the item's source changed",
    ["outcome"],
)

# =============================================================================
# Redis Metrics
# =============================================================================

REDIS_OPERATIONS_TOTAL = Counter(
    "mediastore_redis_operations_total",
    "Total Redis operations",
    ["operation", "result"],  # operation: publish, submit, cancel. result: success, failed
)

REDIS_CIRCUIT_BREAKER_STATE = Gauge(
    "mediastore_redis_circuit_breaker_state",
    "Redis circuit breaker state (0=closed, 1=open)",
)


def init_app_info(version: str = "0.1.0"):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "mediastore"})


def start_metrics_server(port: int, version: str = "0.1.0") -> bool:
    """
    Serve the default registry in Prometheus text format.

    Args:
        port: Listen port, 0 disables the endpoint

    Returns:
        True if the endpoint was started
    """
    if not port:
        return False
    init_app_info(version)
    start_http_server(port)
    return True
