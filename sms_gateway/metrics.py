"""
Prometheus metrics for the SMS gateway.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Send, ingestion and authentication outcome counters
- Event channel counters and a connected-subscriber gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


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

# result: accepted, success, failure, validation_error
sms_send_total = Counter(
    "sms_send_total",
    "Total send requests and transport outcomes",
    labelnames=["result"]
)

# result: created, invalid_signature, validation_error
incoming_messages_total = Counter(
    "incoming_messages_total",
    "Total inbound message ingestion outcomes",
    labelnames=["result"]
)

auth_failures_total = Counter(
    "auth_failures_total",
    "Requests rejected for a missing or invalid API key"
)

events_published_total = Counter(
    "events_published_total",
    "Events broadcast to subscribers",
    labelnames=["type"]
)

# reason: send_failed, send_timeout, queue_overflow, loop_closed
event_subscribers_dropped_total = Counter(
    "event_subscribers_dropped_total",
    "Subscribers removed by the hub after a delivery problem",
    labelnames=["reason"]
)

event_subscribers = Gauge(
    "event_subscribers",
    "Currently connected event subscribers"
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template or request path
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


def record_send_outcome(result: str) -> None:
    """
    Record a send request or transport outcome.

    Args:
        result: One of "accepted", "success", "failure", "validation_error"
    """
    sms_send_total.labels(result=result).inc()


def record_incoming_outcome(result: str) -> None:
    """Record an inbound message ingestion outcome."""
    incoming_messages_total.labels(result=result).inc()


def record_auth_failure() -> None:
    auth_failures_total.inc()


def record_event_published(event_type: str) -> None:
    events_published_total.labels(type=event_type).inc()


def record_subscriber_dropped(reason: str) -> None:
    event_subscribers_dropped_total.labels(reason=reason).inc()


def set_subscriber_count(count: int) -> None:
    event_subscribers.set(count)


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
