"""Prometheus metric definitions shared across components."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


order_transitions_total = Counter(
    "order_transitions_total",
    "Order state transitions applied",
    ["service", "from_status", "to_status"],
)
authorization_status_total = Counter(
    "authorization_status_total",
    "Authorization status changes applied",
    ["service", "status"],
)
refund_status_total = Counter(
    "refund_status_total",
    "Refund status changes applied",
    ["service", "status"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook deliveries by outcome",
    ["service", "outcome"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate webhook deliveries skipped",
    ["service", "event_type"],
)
discarded_events_total = Counter(
    "discarded_events_total",
    "Webhook events recorded without effect because the transition was no longer valid",
    ["service", "event_type"],
)
version_conflicts_total = Counter(
    "version_conflicts_total",
    "Optimistic concurrency conflicts",
    ["service", "entity"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
gateway_latency_seconds = Histogram(
    "gateway_latency_seconds",
    "Payment gateway call latency seconds",
    ["service", "operation"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
