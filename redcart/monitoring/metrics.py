"""
Prometheus metrics for payment reconciliation monitoring.

Tracks:
- Checkouts by payment method and outcome
- STK push initiations
- Provider callbacks by outcome
- Status polls by source and outcome
- Payment status transitions
- Receipt issuance
- Daraja API calls
- Email dispatch
- API request latency
"""
from prometheus_client import Counter, Histogram

checkouts_total = Counter(
    "checkouts_total",
    "Total checkout attempts",
    ["payment_method", "status"],  # status: created, rejected
)

stk_push_requests_total = Counter(
    "stk_push_requests_total",
    "Total STK push initiations",
    ["status"],  # initiated, already_completed, failed
)

mpesa_callbacks_total = Counter(
    "mpesa_callbacks_total",
    "Total M-Pesa callbacks received",
    ["outcome"],  # success, failed, duplicate, ignored
)

mpesa_callback_duration_seconds = Histogram(
    "mpesa_callback_duration_seconds",
    "M-Pesa callback processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

reconciliation_polls_total = Counter(
    "reconciliation_polls_total",
    "Total reconciliation status polls",
    ["source", "outcome"],  # outcome: success, failed, pending, error, skipped
)

payment_transitions_total = Counter(
    "payment_transitions_total",
    "Total payment status transitions",
    ["to_status", "via"],
)

receipts_issued_total = Counter(
    "receipts_issued_total",
    "Total receipts created",
)

receipt_number_collisions_total = Counter(
    "receipt_number_collisions_total",
    "Receipt number uniqueness collisions",
)

mpesa_api_requests_total = Counter(
    "mpesa_api_requests_total",
    "Total Daraja API requests",
    ["operation", "status"],  # operation: oauth, stk_push, stk_query
)

emails_total = Counter(
    "emails_total",
    "Total email dispatch attempts",
    ["kind", "status"],  # status: sent, skipped, failed
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "API request latency",
    ["method", "route", "status_code"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_checkout(payment_method: str, status: str) -> None:
        checkouts_total.labels(payment_method=payment_method, status=status).inc()

    @staticmethod
    def record_stk_push(status: str) -> None:
        stk_push_requests_total.labels(status=status).inc()

    @staticmethod
    def record_callback(outcome: str, duration_seconds: float) -> None:
        """Record callback processing."""
        mpesa_callbacks_total.labels(outcome=outcome).inc()
        mpesa_callback_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_poll(source: str, outcome: str) -> None:
        reconciliation_polls_total.labels(source=source, outcome=outcome).inc()

    @staticmethod
    def record_transition(to_status: str, via: str) -> None:
        payment_transitions_total.labels(to_status=to_status, via=via).inc()

    @staticmethod
    def record_receipt_issued() -> None:
        receipts_issued_total.inc()

    @staticmethod
    def record_receipt_collision() -> None:
        receipt_number_collisions_total.inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str) -> None:
        """Record Daraja API call."""
        mpesa_api_requests_total.labels(operation=operation, status=status).inc()

    @staticmethod
    def record_email(kind: str, status: str) -> None:
        emails_total.labels(kind=kind, status=status).inc()

    @staticmethod
    def record_http_request(method: str, route: str, status_code: int, duration_seconds: float) -> None:
        http_request_duration_seconds.labels(
            method=method, route=route, status_code=str(status_code)
        ).observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
