"""
Prometheus metrics for the social sync service.

This module provides:
- HTTP request counter and latency histogram
- Webhook outcome counter
- Sync counters: ingested messages, poll runs, token refreshes, outbound sends

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


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

# result: accepted, invalid_signature, verified, verify_failed
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["platform", "result"]
)

# source: webhook, poll; result: created, duplicate, discarded, error
sync_messages_total = Counter(
    "sync_messages_total",
    "Messages reconciled into the unified store",
    labelnames=["source", "result"]
)

# result: completed, failed, skipped, rate_limited, credential_expired, cancelled
poll_runs_total = Counter(
    "poll_runs_total",
    "Conversation poll runs",
    labelnames=["result"]
)

token_refresh_total = Counter(
    "token_refresh_total",
    "Access token refresh attempts",
    labelnames=["result"]
)

outbound_messages_total = Counter(
    "outbound_messages_total",
    "Outbound message send outcomes",
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


def record_webhook_outcome(platform: str, result: str) -> None:
    webhook_requests_total.labels(platform=platform, result=result).inc()


def record_sync_message(source: str, result: str) -> None:
    sync_messages_total.labels(source=source, result=result).inc()


def record_poll_run(result: str) -> None:
    poll_runs_total.labels(result=result).inc()


def record_token_refresh(result: str) -> None:
    token_refresh_total.labels(result=result).inc()


def record_outbound_message(result: str) -> None:
    outbound_messages_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
