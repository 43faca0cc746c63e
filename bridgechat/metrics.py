"""
Prometheus metrics for BridgeChat.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Inbound SMS routing outcomes
- Status callback outcomes
- Per-recipient dispatch results and aggregate dispatch statuses

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

# result: admitted, unknown_group, unknown_sender, not_member,
#         invalid_signature, malformed, config_error
inbound_sms_total = Counter(
    "inbound_sms_total",
    "Inbound SMS webhook outcomes",
    labelnames=["result"]
)

# result: updated, not_found, invalid_signature, malformed, config_error
status_callbacks_total = Counter(
    "status_callbacks_total",
    "Carrier status callback outcomes",
    labelnames=["result"]
)

# result: sent, error
dispatch_recipients_total = Counter(
    "dispatch_recipients_total",
    "Per-recipient outbound send attempts",
    labelnames=["result"]
)

# status: final aggregate delivery status, or skipped / error
dispatch_outcomes_total = Counter(
    "dispatch_outcomes_total",
    "Outbound dispatch outcomes by aggregate status",
    labelnames=["status"]
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


def record_inbound_outcome(result: str) -> None:
    inbound_sms_total.labels(result=result).inc()


def record_status_callback(result: str) -> None:
    status_callbacks_total.labels(result=result).inc()


def record_recipient_send(result: str) -> None:
    dispatch_recipients_total.labels(result=result).inc()


def record_dispatch_outcome(status: str) -> None:
    dispatch_outcomes_total.labels(status=status).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
