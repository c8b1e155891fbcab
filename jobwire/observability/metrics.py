"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    start_http_server,
)

from jobwire.constants import (
    METRIC_ACK_FAILURES,
    METRIC_JOB_DURATION,
    METRIC_JOBS_COMPLETED,
    METRIC_MESSAGES_ACKED,
    METRIC_NOTIFICATION_FAILURES,
    METRIC_NOTIFICATIONS_PUBLISHED,
    METRIC_RESERVATIONS,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for jobwire workers.

    Collects metrics for:
    - Notifications published and failed publishes
    - Reservation outcomes
    - Broker acknowledgments
    - Job completions and execution duration
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.notifications_published = Counter(
            METRIC_NOTIFICATIONS_PUBLISHED,
            "Total number of job notifications published",
            ["priority"],
            registry=self._registry,
        )

        self.notification_failures = Counter(
            METRIC_NOTIFICATION_FAILURES,
            "Total number of job notifications that failed to publish",
            registry=self._registry,
        )

        self.reservations = Counter(
            METRIC_RESERVATIONS,
            "Total number of reserve calls by outcome",
            ["outcome"],
            registry=self._registry,
        )

        self.messages_acked = Counter(
            METRIC_MESSAGES_ACKED,
            "Total number of broker messages acknowledged",
            ["stage"],
            registry=self._registry,
        )

        self.ack_failures = Counter(
            METRIC_ACK_FAILURES,
            "Total number of broker acknowledgments that failed",
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of jobs invoked",
            ["handler", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["handler", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 600.0),
            registry=self._registry,
        )

    def record_notification_published(self, priority: str) -> None:
        """Record a published notification."""
        self.notifications_published.labels(priority=priority).inc()

    def record_notification_failed(self) -> None:
        """Record a notification that could not be published."""
        self.notification_failures.inc()

    def record_reservation(self, outcome: str) -> None:
        """Record the outcome of a reserve call."""
        self.reservations.labels(outcome=outcome).inc()

    def record_message_acked(self, stage: str) -> None:
        """Record an acknowledgment (``reserve`` or ``invoke``)."""
        self.messages_acked.labels(stage=stage).inc()

    def record_message_ack_failed(self) -> None:
        """Record an acknowledgment that could not be delivered."""
        self.ack_failures.inc()

    def record_job_completed(
        self,
        handler: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record a job invocation."""
        self.jobs_completed.labels(handler=handler, status=status).inc()
        self.job_duration.labels(handler=handler, status=status).observe(
            duration_seconds
        )


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: If given, expose the default registry over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port is not None:
        start_http_server(port)
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
