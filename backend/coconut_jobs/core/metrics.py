"""Prometheus metrics for HTTP traffic and Coconut job processing."""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    multiprocess,
)
import os

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()

# Check if running in multiprocess mode (e.g., with gunicorn)
if "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "coconut_jobs_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
    registry=REGISTRY,
)


# ============================================
# Coconut Metrics
# ============================================
COCONUT_JOBS_SUBMITTED_TOTAL = Counter(
    "coconut_jobs_submitted_total",
    "Jobs submitted to the Coconut API",
    ["status"],
    registry=REGISTRY,
)

COCONUT_API_REQUESTS_TOTAL = Counter(
    "coconut_api_requests_total",
    "Total Coconut API requests",
    ["operation", "status"],
    registry=REGISTRY,
)

COCONUT_API_REQUEST_DURATION_SECONDS = Histogram(
    "coconut_api_request_duration_seconds",
    "Coconut API request duration in seconds",
    ["operation"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)

COCONUT_NOTIFICATIONS_TOTAL = Counter(
    "coconut_notifications_total",
    "Coconut webhook notifications received",
    ["event", "result"],
    registry=REGISTRY,
)

COCONUT_OUTPUTS_TOTAL = Counter(
    "coconut_outputs_total",
    "Output status changes",
    ["status"],
    registry=REGISTRY,
)

UPLOAD_PROXY_BYTES_TOTAL = Counter(
    "upload_proxy_bytes_total",
    "Bytes written to volumes through the upload proxy",
    ["volume"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
