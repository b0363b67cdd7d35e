"""
Prometheus metrics for the message sync service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Sync tick counter (source, outcome)
- Synced message counter (source, result)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# source: poll, backfill
# outcome: ok, skipped, failed, overlapped
sync_ticks_total = Counter(
    "sync_ticks_total",
    "Inbox sync runs by outcome",
    labelnames=["source", "outcome"]
)

# result: created, duplicate, empty, error
sync_messages_total = Counter(
    "sync_messages_total",
    "Provider inbox records processed by result",
    labelnames=["source", "result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_sync_tick(source: str, outcome: str) -> None:
    sync_ticks_total.labels(source=source, outcome=outcome).inc()


def record_sync_message(source: str, result: str) -> None:
    """
    Record the handling of one provider record.

    Args:
        source: "poll" or "backfill"
        result: "created", "duplicate", "empty" (blank body) or "error"
    """
    sync_messages_total.labels(source=source, result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
