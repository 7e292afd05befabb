"""
Prometheus metrics for the chat relay.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Message ingestion outcomes and message length
- Connection lifecycle events and live gateway handles
- Fanout delivery outcomes and change-feed batch results

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: created, duplicate, validation_error, error
messages_posted_total = Counter(
    "messages_posted_total",
    "Total message ingestion outcomes",
    labelnames=["result"]
)

message_length_chars = Histogram(
    "message_length_chars",
    "Length of accepted messages in characters",
    buckets=(10, 25, 50, 100, 200, 300, 400, 500)
)

# event: connect, disconnect, rejected, pruned, reaped
connection_events_total = Counter(
    "connection_events_total",
    "Total connection lifecycle events",
    labelnames=["event"]
)

active_connections = Gauge(
    "active_connections",
    "Live WebSocket handles held by this process"
)

# outcome: delivered, pruned, dropped
fanout_deliveries_total = Counter(
    "fanout_deliveries_total",
    "Per-connection fanout delivery outcomes",
    labelnames=["outcome"]
)

# result: committed, failed
feed_batches_total = Counter(
    "feed_batches_total",
    "Change-feed batches processed",
    labelnames=["result"]
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
    # Collapse per-room history paths to avoid high-cardinality labels
    normalized_path = path.split("?")[0]
    if normalized_path.startswith("/chat/messages/"):
        normalized_path = "/chat/messages/{room_id}"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_message_outcome(result: str, length: int = 0) -> None:
    messages_posted_total.labels(result=result).inc()
    if result == "created":
        message_length_chars.observe(length)


def record_connection_event(event: str, count: int = 1) -> None:
    connection_events_total.labels(event=event).inc(count)


def record_delivery_outcome(outcome: str, count: int = 1) -> None:
    if count:
        fanout_deliveries_total.labels(outcome=outcome).inc(count)


def record_feed_batch(result: str) -> None:
    feed_batches_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
