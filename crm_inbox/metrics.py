"""
Prometheus metrics for the inbox service.

This module provides:
- HTTP request counter and latency histogram (method, path)
- Webhook ingest outcome counter (result)
- Reconciliation counters: collapsed duplicates, skipped records,
  read-state updates and deletes

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

# result: created, duplicate, invalid_signature, validation_error, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

inbox_records_collapsed_total = Counter(
    "inbox_records_collapsed_total",
    "Records merged into another record describing the same event"
)

# reason: malformed, orphaned, not_visible
inbox_records_skipped_total = Counter(
    "inbox_records_skipped_total",
    "Records left out of the merged inbox view",
    labelnames=["reason"]
)

# source: message, history, unknown; result: updated, not_found, error
inbox_read_updates_total = Counter(
    "inbox_read_updates_total",
    "Mark-read attempts by the representation that resolved them",
    labelnames=["source", "result"]
)

# result: deleted, error
inbox_deletes_total = Counter(
    "inbox_deletes_total",
    "Bulk delete outcomes per reference",
    labelnames=["result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    # Strip query strings to avoid high-cardinality labels
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
    webhook_requests_total.labels(result=result).inc()


def record_collapsed(count: int) -> None:
    inbox_records_collapsed_total.inc(count)


def record_skipped(reason: str) -> None:
    inbox_records_skipped_total.labels(reason=reason).inc()


def record_read_update(source: str, result: str) -> None:
    inbox_read_updates_total.labels(source=source, result=result).inc()


def record_delete(result: str) -> None:
    inbox_deletes_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """Prometheus text exposition of every registered metric."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
