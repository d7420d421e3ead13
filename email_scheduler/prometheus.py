"""Prometheus metrics exposed by the email scheduler."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class SchedulerMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.scheduled = Counter(
            "es_emails_scheduled_total", "Emails materialized by campaigns", registry=self.registry
        )
        self.sent = Counter("es_emails_sent_total", "Emails accepted by the relay", registry=self.registry)
        self.failed = Counter("es_emails_failed_total", "Failed send attempts", registry=self.registry)
        self.rescheduled = Counter(
            "es_emails_rescheduled_total", "Emails pushed to a later window by the hourly quota",
            registry=self.registry,
        )
        self.skipped = Counter(
            "es_jobs_skipped_total", "Deliveries ignored by the idempotency checks", ["reason"],
            registry=self.registry,
        )
        self.delayed = Gauge("es_delayed_jobs", "Jobs waiting in the delay queue", registry=self.registry)

    def inc_scheduled(self, count: int = 1):
        self.scheduled.inc(count)

    def inc_sent(self):
        self.sent.inc()

    def inc_failed(self):
        self.failed.inc()

    def inc_rescheduled(self):
        self.rescheduled.inc()

    def inc_skipped(self, reason: str):
        """Increase the ``skipped`` counter for an idempotency outcome."""
        self.skipped.labels(reason=reason or "unknown").inc()

    def set_delayed(self, value: int):
        self.delayed.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
