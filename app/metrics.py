"""
Prometheus metrics for the webhook API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook intake outcome counter (result)
- Scheduled sub-event counter (kind)
- Reconciliation outcome counter (kind, outcome)

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

# Webhook intake outcome counter
# result: accepted, invalid_signature, validation_error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook intake outcomes",
    labelnames=["result"]
)

# kind: message, status
webhook_events_scheduled_total = Counter(
    "webhook_events_scheduled_total",
    "Sub-events handed off for background reconciliation",
    labelnames=["kind"]
)

# outcome: created, updated, unchanged, downgrade_prevented, invalid, failed
reconciliations_total = Counter(
    "reconciliations_total",
    "Reconciliation outcomes per sub-event",
    labelnames=["kind", "outcome"]
)

# Request latency histogram in seconds
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
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


def record_webhook_outcome(result: str) -> None:
    """Record a webhook intake result (accepted, invalid_signature, validation_error)."""
    webhook_requests_total.labels(result=result).inc()


def record_scheduled_event(kind: str) -> None:
    webhook_events_scheduled_total.labels(kind=kind).inc()


def record_reconciliation(kind: str, outcome: str) -> None:
    reconciliations_total.labels(kind=kind, outcome=outcome).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
