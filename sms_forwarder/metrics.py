"""
Prometheus metrics for the forwarder.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Telephony callback outcome counter (event_type, result)
- Push notification outcome counter (result)
- Webhook relay outcome counter (event_type, result)
- Persistence failure counter (store)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


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

# event_type: sms, call, call_status
# result: ok, error
callbacks_total = Counter(
    "callbacks_total",
    "Telephony callbacks processed",
    labelnames=["event_type", "result"]
)

# result: sent, failed, pruned, skipped
push_notifications_total = Counter(
    "push_notifications_total",
    "Push notification outcomes, counted per device token",
    labelnames=["result"]
)

# result: delivered, failed
webhook_relays_total = Counter(
    "webhook_relays_total",
    "Outbound webhook relay outcomes",
    labelnames=["event_type", "result"]
)

persistence_failures_total = Counter(
    "persistence_failures_total",
    "Failed writes of a store's backing file",
    labelnames=["store"]
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
    # Message ids in /api/messages/{id}/... would blow up label cardinality
    normalized_path = path.split("?")[0]
    parts = normalized_path.split("/")
    if len(parts) == 5 and parts[1] == "api" and parts[2] == "messages":
        parts[3] = ":id"
        normalized_path = "/".join(parts)

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_callback(event_type: str, result: str) -> None:
    """Record a telephony callback outcome ("ok" or "error")."""
    callbacks_total.labels(event_type=event_type, result=result).inc()


def record_push(result: str, count: int = 1) -> None:
    """Record push outcomes for ``count`` device tokens."""
    if count > 0:
        push_notifications_total.labels(result=result).inc(count)


def record_relay(event_type: str, result: str) -> None:
    """Record a webhook relay outcome ("delivered" or "failed")."""
    webhook_relays_total.labels(event_type=event_type, result=result).inc()


def record_persistence_failure(store: str) -> None:
    persistence_failures_total.labels(store=store).inc()


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
