"""
Prometheus metrics for the relay API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Broadcast counter
- Per-recipient delivery outcome counter (channel, result)

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

broadcasts_total = Counter(
    "broadcasts_total",
    "Total messages broadcast to the group"
)

# channel: push, sms
# result: sent, failed, expired, no_subscription
deliveries_total = Counter(
    "deliveries_total",
    "Delivery attempts by channel and outcome",
    labelnames=["channel", "result"]
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
    # Collapse member ids so /api/admin/members/<id> stays one label value
    normalized_path = path.split("?")[0]
    if normalized_path.startswith("/api/admin/members/"):
        normalized_path = "/api/admin/members/{id}"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_broadcast() -> None:
    broadcasts_total.inc()


def record_delivery(channel: str, result: str) -> None:
    deliveries_total.labels(channel=channel, result=result).inc()


def get_metrics() -> bytes:
    """Generate Prometheus exposition format metrics."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
