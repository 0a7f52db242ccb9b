"""Prometheus metrics exposed by the reply service."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest

class ReplyMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.polls = Counter("ars_polls_total", "Total mailbox polls", ["tenant_id"], registry=self.registry)
        self.poll_failures = Counter(
            "ars_poll_failures_total", "Polls aborted by a mailbox error", ["tenant_id"], registry=self.registry
        )
        self.emails_checked = Counter(
            "ars_emails_checked_total", "Unseen emails fetched", ["tenant_id"], registry=self.registry
        )
        self.replies_added = Counter(
            "ars_replies_added_total", "Customer replies stored", ["tenant_id"], registry=self.registry
        )
        self.poll_errors = Counter(
            "ars_poll_errors_total", "Per-email errors recorded during polls", ["tenant_id"], registry=self.registry
        )
        self.replies_sent = Counter(
            "ars_replies_sent_total", "Operator replies sent over SMTP", ["tenant_id"], registry=self.registry
        )
        self.in_flight = Gauge("ars_polls_in_flight", "Polls currently running", registry=self.registry)

    def record_poll(self, tenant_id: str, emails_checked: int, replies_added: int, errors: int):
        """Account for one finished poll."""
        label = tenant_id or "default"
        self.polls.labels(tenant_id=label).inc()
        self.emails_checked.labels(tenant_id=label).inc(emails_checked)
        self.replies_added.labels(tenant_id=label).inc(replies_added)
        self.poll_errors.labels(tenant_id=label).inc(errors)

    def inc_poll_failure(self, tenant_id: str):
        """Increase the ``poll_failures`` counter for the given tenant."""
        label = tenant_id or "default"
        self.polls.labels(tenant_id=label).inc()
        self.poll_failures.labels(tenant_id=label).inc()

    def inc_reply_sent(self, tenant_id: str):
        """Increase the ``replies_sent`` counter for the given tenant."""
        self.replies_sent.labels(tenant_id=tenant_id or "default").inc()

    def set_in_flight(self, value: int):
        """Update the gauge tracking running polls."""
        self.in_flight.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
