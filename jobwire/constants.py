"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class BrokerPriority(StrEnum):
    """
    Broker delivery lanes, highest first.

    Workers always drain a higher lane before looking at a lower one.
    """

    HIGH = "high"
    NORMAL = "normal"
    BULK = "bulk"


class ReservationOutcome(StrEnum):
    """What a single reserve call decided about the popped notification."""

    EMPTY = "empty"
    EXTERNAL = "external"
    MISSING = "missing"
    FAILED = "failed"
    STALE = "stale"
    ACQUIRED = "acquired"
    HEALTHY_LOCK = "healthy_lock"
    STALE_LOCK = "stale_lock"


# Lane order used when popping
PRIORITY_ORDER: tuple[BrokerPriority, ...] = (
    BrokerPriority.HIGH,
    BrokerPriority.NORMAL,
    BrokerPriority.BULK,
)

# Job priority -> broker lane
DEFAULT_PRIORITY_MAP: dict[int, BrokerPriority] = {
    -10: BrokerPriority.BULK,
    0: BrokerPriority.NORMAL,
    10: BrokerPriority.HIGH,
}

# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_JOB_PRIORITY = 0
DEFAULT_BROKER_PRIORITY = BrokerPriority.NORMAL

# Metrics names
METRIC_NOTIFICATIONS_PUBLISHED = "notifications_published_total"
METRIC_NOTIFICATION_FAILURES = "notification_publish_failures_total"
METRIC_RESERVATIONS = "reservations_total"
METRIC_MESSAGES_ACKED = "broker_messages_acked_total"
METRIC_ACK_FAILURES = "broker_ack_failures_total"
METRIC_JOBS_COMPLETED = "jobs_completed_total"
METRIC_JOB_DURATION = "job_duration_seconds"
