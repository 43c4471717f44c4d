"""
Prometheus metrics for the session service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Session state transition counter (state)
- Ingest outcome counter (result)
- History fetch counter (mode)
- Live session gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


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

# state: INITIALIZING, QR_READY, CONNECTED, SYNCING, DISCONNECTED
session_transitions_total = Counter(
    "session_transitions_total",
    "Session state transitions",
    labelnames=["state"]
)

# result: stored, skipped, error
ingest_messages_total = Counter(
    "ingest_messages_total",
    "Message ingest outcomes",
    labelnames=["result"]
)

# mode: on_demand, bulk, catch_up
history_fetches_total = Counter(
    "history_fetches_total",
    "External history fetches issued to client handles",
    labelnames=["mode"]
)

active_sessions = Gauge(
    "active_sessions",
    "Client handles currently held in the registry"
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
    # Normalize path to avoid high-cardinality labels
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


def record_transition(state: str) -> None:
    session_transitions_total.labels(state=state).inc()


def record_ingest_outcome(result: str) -> None:
    """
    Record a message ingest outcome.

    Args:
        result: one of "stored", "skipped" (filtered or unplaceable), "error"
    """
    ingest_messages_total.labels(result=result).inc()


def record_history_fetch(mode: str) -> None:
    history_fetches_total.labels(mode=mode).inc()


def set_active_sessions(count: int) -> None:
    active_sessions.set(count)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
