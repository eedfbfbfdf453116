"""
Prometheus metrics for the subscriber.
"""
from prometheus_client import Counter, Histogram, Info, CollectorRegistry


class SubscriberMetrics:
    """
    Centralized metrics for subscriptions.
    """

    def __init__(self, service_name: str = "pubsub-subscriber", version: str = "0.1.0", registry=None):
        self.service_name = service_name
        self.version = version
        self.registry = registry or CollectorRegistry()

        self.app_info = Info(
            "app",
            "Application information",
            registry=self.registry,
        )
        self.app_info.info({"service": service_name, "version": version})

        # Stream metrics
        self.batches_received_total = Counter(
            "pubsub_batches_received_total",
            "Total event batches received",
            ["topic"],
            registry=self.registry,
        )

        self.events_received_total = Counter(
            "pubsub_events_received_total",
            "Total events received",
            ["topic"],
            registry=self.registry,
        )

        self.subscriptions_finished_total = Counter(
            "pubsub_subscriptions_finished_total",
            "Subscriptions finished by terminal status",
            ["topic", "status"],
            registry=self.registry,
        )

        # Dispatch metrics
        self.events_dispatched_total = Counter(
            "pubsub_events_dispatched_total",
            "Events handled successfully",
            ["topic"],
            registry=self.registry,
        )

        self.events_failed_total = Counter(
            "pubsub_events_failed_total",
            "Events that failed decoding or handling",
            ["topic", "stage"],
            registry=self.registry,
        )

        self.schemaless_decodes_total = Counter(
            "pubsub_schemaless_decodes_total",
            "Events decoded without a schema",
            ["topic"],
            registry=self.registry,
        )

        self.handler_duration = Histogram(
            "pubsub_handler_duration_seconds",
            "Per-event handler duration in seconds",
            ["topic"],
            registry=self.registry,
        )

    def record_batch(self, topic: str, size: int):
        """Record a received batch."""
        self.batches_received_total.labels(topic=topic).inc()
        self.events_received_total.labels(topic=topic).inc(size)

    def record_dispatched(self, topic: str, duration: float):
        """Record a successfully handled event."""
        self.events_dispatched_total.labels(topic=topic).inc()
        self.handler_duration.labels(topic=topic).observe(duration)

    def record_failure(self, topic: str, stage: str):
        """Record a failed event ("decode" or "handler")."""
        self.events_failed_total.labels(topic=topic, stage=stage).inc()

    def record_schemaless(self, topic: str):
        self.schemaless_decodes_total.labels(topic=topic).inc()

    def record_finished(self, topic: str, status: str):
        self.subscriptions_finished_total.labels(topic=topic, status=status).inc()
