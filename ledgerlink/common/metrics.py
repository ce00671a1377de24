"""Prometheus metric definitions shared across reconcilers and the gateway."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


webhooks_received_total = Counter(
    "webhooks_received_total",
    "Webhook deliveries received",
    ["provider", "outcome"],
)
webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook deliveries rejected by signature verification",
    ["provider", "reason"],
)
webhook_processing_seconds = Histogram(
    "webhook_processing_seconds",
    "Webhook processing duration seconds",
    ["provider"],
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
payment_reconciliations_total = Counter(
    "payment_reconciliations_total",
    "Payment webhook reconciliation outcomes",
    ["outcome", "status"],
)
message_reconciliations_total = Counter(
    "message_reconciliations_total",
    "Messaging webhook reconciliation outcomes",
    ["kind", "outcome"],
)
stale_status_updates_total = Counter(
    "stale_status_updates_total",
    "Message snapshots skipped because a newer snapshot was already applied",
)
notifications_total = Counter(
    "notifications_total",
    "Outbound notification attempts",
    ["result"],
)
notification_outbox_pending = Gauge(
    "notification_outbox_pending",
    "Current count of notification outbox rows not yet sent",
)
live_connections = Gauge("live_connections", "Connected live event stream viewers")
broadcast_deliveries_total = Counter(
    "broadcast_deliveries_total",
    "Live events pushed to viewers",
    ["event_type", "result"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
