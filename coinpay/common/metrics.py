"""Prometheus metric definitions for the payments service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


orders_created_total = Counter("orders_created_total", "Total orders created", ["service", "currency"])
payment_confirmations_total = Counter(
    "payment_confirmations_total",
    "Payment confirmation attempts by trigger source and outcome",
    ["service", "source", "outcome"],
)
signature_failures_total = Counter(
    "signature_failures_total",
    "Rejected signatures, a possible tampering or replay attempt",
    ["service", "source"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook deliveries by event type and handling result",
    ["service", "event", "result"],
)
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Remote gateway calls by result",
    ["service", "operation", "result"],
)
gateway_latency_seconds = Histogram(
    "gateway_latency_seconds",
    "Remote gateway call latency seconds",
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
payment_confirm_seconds = Histogram(
    "payment_confirm_seconds",
    "Seconds from order creation until the order became paid",
    ["service", "source"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
