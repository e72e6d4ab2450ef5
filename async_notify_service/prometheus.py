"""Prometheus metrics exposed by the notification service."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest

class NotifyMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("gns_sent_total", "Total sent emails", ["priority"], registry=self.registry)
        self.failed = Counter("gns_failed_total", "Emails that exhausted their retries", ["priority"], registry=self.registry)
        self.retried = Counter("gns_retried_total", "Failed attempts rescheduled with backoff", ["priority"], registry=self.registry)
        self.push_events = Counter("gns_push_events_total", "Push events emitted", ["event"], registry=self.registry)
        self.fallback_skipped = Counter(
            "gns_mail_fallback_skipped_total",
            "Elevated notifications without a contact address",
            registry=self.registry,
        )
        self.pending = Gauge("gns_pending_messages", "Current pending messages", registry=self.registry)
        self.online_users = Gauge("gns_online_users", "Users with at least one live connection", registry=self.registry)
        self.connections = Gauge("gns_active_connections", "Live push connections", registry=self.registry)

    def inc_sent(self, priority: str):
        """Increase the ``sent`` counter for the given priority label."""
        self.sent.labels(priority=priority or "normal").inc()

    def inc_failed(self, priority: str):
        """Increase the ``failed`` counter for the given priority label."""
        self.failed.labels(priority=priority or "normal").inc()

    def inc_retried(self, priority: str):
        """Increase the ``retried`` counter for the given priority label."""
        self.retried.labels(priority=priority or "normal").inc()

    def inc_push(self, event: str, count: int = 1):
        """Count ``count`` emissions of a push event."""
        if count > 0:
            self.push_events.labels(event=event).inc(count)

    def inc_fallback_skipped(self):
        self.fallback_skipped.inc()

    def set_pending(self, value: int):
        """Update the gauge tracking pending messages."""
        self.pending.set(value)

    def set_connections(self, users: int, connections: int):
        """Update the gauges describing the connection registry."""
        self.online_users.set(users)
        self.connections.set(connections)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
