"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests by route, method and status",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency seconds",
    ["service", "route", "method"],
)
payment_requests_total = Counter("payment_requests_total", "Total payment submissions", ["service"])
duplicate_submissions_total = Counter(
    "duplicate_submissions_total",
    "Submissions answered by the idempotency gate",
    ["service", "kind"],
)
idempotency_store_unavailable_total = Counter(
    "idempotency_store_unavailable_total",
    "Submissions rejected because the idempotency store was unreachable",
    ["service"],
)
verdicts_total = Counter(
    "validator_verdicts_total",
    "Validator verdicts applied to a live orchestration",
    ["service", "validator", "decision"],
)
late_verdicts_total = Counter(
    "late_verdicts_total",
    "Verdicts ignored because the decision was already made or the attempt was stale",
    ["service", "validator", "reason"],
)
decisions_total = Counter("decisions_total", "Orchestration decisions", ["service", "outcome", "reason"])
aggregation_seconds = Histogram(
    "aggregation_seconds",
    "Seconds from dispatch to decision",
    ["service", "timed_out"],
)
payment_e2e_seconds = Histogram(
    "payment_e2e_seconds",
    "Payment end-to-end duration seconds from submission to terminal",
    ["service", "terminal_state"],
)
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
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
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
dlq_published_total = Counter(
    "dlq_published_total",
    "Total dead-letter envelopes created or updated",
    ["service", "stage", "failure_kind"],
)
manual_review_total = Counter(
    "manual_review_total",
    "Dead-letter envelopes escalated to manual review",
    ["service", "stage"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate inbox events skipped",
    ["service", "topic"],
)
reservations_expired_total = Counter(
    "reservations_expired_total",
    "Ledger reservations released by expiry",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
