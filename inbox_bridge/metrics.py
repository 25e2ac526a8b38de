"""
Prometheus metrics for the webhook service.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Webhook batch outcome counter (result)
- Per-item reconciliation outcome counter (kind, result)
- Bot routing outcome counter (result)
- Cached tenant connection gauge

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

# result: accepted, test, inactive, rejected
webhook_batches_total = Counter(
    "webhook_batches_total",
    "Total webhook batches by outcome",
    labelnames=["result"]
)

# kind: contact, message
# result: created, duplicate, duplicate_content, skipped, invalid, failed
webhook_items_total = Counter(
    "webhook_items_total",
    "Total webhook items by reconciliation outcome",
    labelnames=["kind", "result"]
)

# result: replied, fallback, fallback_failed, not_bot, no_client, no_assignee
bot_routing_total = Counter(
    "bot_routing_total",
    "Bot routing decisions for inbound messages",
    labelnames=["result"]
)

tenant_pool_connections = Gauge(
    "tenant_pool_connections",
    "Tenant database engines currently cached"
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path, or route template when known
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


def record_batch_outcome(result: str) -> None:
    webhook_batches_total.labels(result=result).inc()


def record_item_outcome(kind: str, result: str) -> None:
    webhook_items_total.labels(kind=kind, result=result).inc()


def record_bot_routing(result: str) -> None:
    bot_routing_total.labels(result=result).inc()


def set_pool_size(size: int) -> None:
    tenant_pool_connections.set(size)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
