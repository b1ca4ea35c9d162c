"""
Prometheus metrics for reconciliation monitoring.

Tracks:
- Poll cycles and their duration per gateway family
- Matched transactions by source (poll, webhook, status check)
- Gateway errors by kind
- Webhook deliveries by outcome
- Notification fanout results
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Polling metrics
poll_cycles_total = Counter(
    "poll_cycles_total",
    "Total polling cycles run",
    ["family"],
)

poll_cycle_duration_seconds = Histogram(
    "poll_cycle_duration_seconds",
    "Polling cycle duration in seconds",
    ["family"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

pending_transactions = Gauge(
    "pending_transactions",
    "Pending transactions seen in the last cycle",
    ["family"],
)

poll_last_run_timestamp = Gauge(
    "poll_last_run_timestamp",
    "Timestamp of the last polling cycle",
)

# Matching metrics
transactions_matched_total = Counter(
    "transactions_matched_total",
    "Transactions moved from pending to success",
    ["gateway", "source"],  # source: poll, webhook, status_check
)

mutations_already_consumed_total = Counter(
    "mutations_already_consumed_total",
    "Matches skipped because another writer won the transition",
    ["gateway"],
)

transactions_expired_total = Counter(
    "transactions_expired_total",
    "Pending transactions moved to expired by the sweep",
)

# Gateway metrics
gateway_errors_total = Counter(
    "gateway_errors_total",
    "Gateway adapter errors",
    ["gateway", "error_type"],  # unavailable, blocked
)

# Webhook metrics
webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook deliveries by outcome",
    ["gateway", "status"],  # matched, noop, duplicate, deferred, rejected
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["gateway"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Fanout metrics
notifications_total = Counter(
    "notifications_total",
    "Notification side effects by channel and result",
    ["channel", "status"],  # channel: hub, callback
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_poll_cycle(family: str, duration_seconds: float, pending: int) -> None:
        """Record one polling cycle for a gateway family."""
        poll_cycles_total.labels(family=family).inc()
        poll_cycle_duration_seconds.labels(family=family).observe(duration_seconds)
        pending_transactions.labels(family=family).set(pending)
        poll_last_run_timestamp.set(time.time())

    @staticmethod
    def record_match(gateway: str, source: str) -> None:
        """Record a pending to success transition."""
        transactions_matched_total.labels(gateway=gateway, source=source).inc()

    @staticmethod
    def record_already_consumed(gateway: str) -> None:
        """Record a lost compare-and-set."""
        mutations_already_consumed_total.labels(gateway=gateway).inc()

    @staticmethod
    def record_expired(count: int) -> None:
        """Record transactions expired by the sweep."""
        if count:
            transactions_expired_total.inc(count)

    @staticmethod
    def record_gateway_error(gateway: str, error_type: str) -> None:
        """Record gateway error."""
        gateway_errors_total.labels(gateway=gateway, error_type=error_type).inc()

    @staticmethod
    def record_webhook_event(gateway: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_total.labels(gateway=gateway, status=status).inc()
        webhook_processing_duration_seconds.labels(gateway=gateway).observe(duration_seconds)

    @staticmethod
    def record_notification(channel: str, status: str) -> None:
        """Record a hub publish or callback delivery."""
        notifications_total.labels(channel=channel, status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
