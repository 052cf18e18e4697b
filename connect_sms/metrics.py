"""
Prometheus metrics for the SMS service.

Counters cover the HTTP surface, inbound webhook outcomes, provider history
syncs and unread counter updates that had to be skipped. Everything lives in
the default prometheus-client registry of the process.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests handled, by route and status code",
    labelnames=["method", "path", "status"],
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Time spent handling a request",
    labelnames=["method", "path"],
)

# result: member, visitor, church, unattributed, duplicate,
# validation_error, invalid_signature, error
sms_webhook_total = Counter(
    "sms_webhook_total",
    "Inbound SMS webhook outcomes",
    labelnames=["result"],
)

# outcome: fetched (seen at the provider), stored (new in the database)
sms_sync_messages_total = Counter(
    "sms_sync_messages_total",
    "Provider messages seen and stored by history syncs",
    labelnames=["endpoint", "outcome"],
)

unread_counter_failures_total = Counter(
    "unread_counter_failures_total",
    "Unread counter updates that failed and were skipped",
    labelnames=["audience"],
)


# =============================================================================
# Recording
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """Count one handled request and observe its latency. Query strings are dropped from the path label."""
    route = path.partition("?")[0]
    http_requests_total.labels(method=method, path=route, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=route).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    sms_webhook_total.labels(result=result).inc()


def record_sync_result(endpoint: str, fetched: int, stored: int) -> None:
    sms_sync_messages_total.labels(endpoint=endpoint, outcome="fetched").inc(fetched)
    sms_sync_messages_total.labels(endpoint=endpoint, outcome="stored").inc(stored)


def record_counter_failure(audience: str) -> None:
    unread_counter_failures_total.labels(audience=audience).inc()


def get_metrics() -> bytes:
    """Current values of every metric in the text exposition format."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
