"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


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
payment_links_created_total = Counter(
    "payment_links_created_total",
    "Total payment links created",
    ["service", "currency"],
)
payment_link_transitions_total = Counter(
    "payment_link_transitions_total",
    "Committed payment link state transitions",
    ["service", "to_state"],
)
state_conflicts_total = Counter(
    "state_conflicts_total",
    "Rejected payment link transitions",
    ["service", "operation"],
)
webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Webhook delivery attempts by outcome",
    ["service", "event", "outcome"],
)
webhook_delivery_seconds = Histogram(
    "webhook_delivery_seconds",
    "Outbound webhook request duration seconds",
    ["service", "event"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of webhook deliveries not yet delivered or dead-lettered",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending webhook delivery",
    ["service"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
dlq_published_total = Counter(
    "dlq_published_total",
    "Total webhook deliveries moved to the dead-letter set",
    ["service", "event"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
