"""
Prometheus metrics for tuition payment monitoring.

Tracks:
- Reconciliation outcomes by source
- Reconciliation duration and applied amounts
- Idempotency hits
- Storage conflicts and retries
- Notification deliveries
- Midtrans API calls and errors
- Webhook transaction states
"""
from prometheus_client import Counter, Histogram

# Reconciliation metrics
reconciliation_outcomes_total = Counter(
    "reconciliation_outcomes_total",
    "Total reconciliation outcomes",
    ["source", "outcome"],  # applied, duplicate, no_op, rejected, ...
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation duration in seconds",
    ["source"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

payment_applied_amount = Histogram(
    "payment_applied_amount",
    "Applied payment amounts in rupiah",
    buckets=(50000, 100000, 250000, 500000, 1000000, 2500000, 5000000, 10000000),
)

payment_excess_dropped_total = Counter(
    "payment_excess_dropped_total",
    "Total gateway overpayment amount clamped away, in rupiah",
)

# Idempotency metrics
idempotency_hits_total = Counter(
    "idempotency_hits_total",
    "Total duplicate payment events detected",
    ["source"],  # redis, ledger
)

# Storage metrics
storage_conflicts_total = Counter(
    "storage_conflicts_total",
    "Total compare-and-swap conflicts on bill writes",
)

# Notification metrics
notifications_dispatched_total = Counter(
    "notifications_dispatched_total",
    "Total notification deliveries",
    ["channel", "status"],  # channel: inbox, push; status: sent, failed, skipped
)

# Midtrans API metrics
gateway_api_requests_total = Counter(
    "gateway_api_requests_total",
    "Total Midtrans API requests",
    ["operation", "status"],
)

gateway_api_errors_total = Counter(
    "gateway_api_errors_total",
    "Total Midtrans API errors",
    ["error_type"],  # transient, permanent
)

gateway_api_duration_seconds = Histogram(
    "gateway_api_duration_seconds",
    "Midtrans API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook notifications received",
    ["transaction_state"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_reconciliation(source: str, outcome: str, duration_seconds: float) -> None:
        """Record a reconciliation outcome."""
        reconciliation_outcomes_total.labels(source=source, outcome=outcome).inc()
        reconciliation_duration_seconds.labels(source=source).observe(duration_seconds)

    @staticmethod
    def record_applied_amount(amount: int, excess_dropped: int = 0) -> None:
        """Record an applied payment amount."""
        payment_applied_amount.observe(amount)
        if excess_dropped:
            payment_excess_dropped_total.inc(excess_dropped)

    @staticmethod
    def record_idempotency_hit(source: str) -> None:
        """Record a duplicate event."""
        idempotency_hits_total.labels(source=source).inc()

    @staticmethod
    def record_storage_conflict() -> None:
        """Record a compare-and-swap conflict."""
        storage_conflicts_total.inc()

    @staticmethod
    def record_notification(channel: str, status: str) -> None:
        """Record a notification delivery attempt."""
        notifications_dispatched_total.labels(channel=channel, status=status).inc()

    @staticmethod
    def record_gateway_api_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record Midtrans API call."""
        gateway_api_requests_total.labels(operation=operation, status=status).inc()
        gateway_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_api_error(error_type: str) -> None:
        """Record Midtrans API error."""
        gateway_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def record_webhook_event(transaction_state: str) -> None:
        """Record a received webhook notification."""
        webhook_events_received_total.labels(transaction_state=transaction_state).inc()


# Export singleton instance
metrics = MetricsCollector()
