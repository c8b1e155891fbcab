"""
Job notifications.

Publishes a broker notification whenever a job row is committed, so an idle
worker wakes up at the job's run_at instead of polling the job store.
"""

import logging
from datetime import datetime
from typing import Any, Protocol

from jobwire.broker.base import Broker
from jobwire.constants import DEFAULT_BROKER_PRIORITY, BrokerPriority
from jobwire.db.events import ChangeKind, CommitEvent
from jobwire.db.models import Job
from jobwire.observability.metrics import MetricsCollector, get_metrics
from jobwire.types.events import JobNotification

logger = logging.getLogger(__name__)


class ExceptionReporter(Protocol):
    """Error-reporting sink (Sentry, Honeybadger, ...)."""

    def notify(self, exc: BaseException) -> Any:
        ...


class Notifier:
    """
    Publishes job notifications to the broker.

    Publishing is best effort: a broker failure is logged and reported but
    never raised, so it cannot fail the persistence that triggered it.
    """

    def __init__(
        self,
        broker: Broker,
        priority_map: dict[int, BrokerPriority] | None = None,
        exception_reporter: ExceptionReporter | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the notifier.

        Args:
            broker: Broker to publish to.
            priority_map: Job priority -> broker lane.
            exception_reporter: Optional sink for publish failures.
            metrics: Metrics collector. Uses the process-wide one if not provided.
        """
        self._broker = broker
        self.priority_map = dict(priority_map or {})
        self.exception_reporter = exception_reporter
        self._metrics = metrics or get_metrics()

    def broker_priority(self, job: Job) -> BrokerPriority:
        """
        Map a job's priority to a broker lane.

        Unmapped priorities fall back to the normal lane with a warning.
        """
        priority = self.priority_map.get(job.priority)
        if priority is None:
            logger.warning(
                "Unknown job priority, using default broker priority",
                extra={
                    "job_id": job.id,
                    "priority": job.priority,
                    "default": DEFAULT_BROKER_PRIORITY.value,
                }
            )
            return DEFAULT_BROKER_PRIORITY
        return priority

    async def publish(self, job: Job, run_at: datetime | None = None) -> None:
        """
        Publish a notification describing the job's current row version.

        Args:
            job: A persisted job.
            run_at: Delivery time. Defaults to the job's run_at.

        Raises:
            UnpersistedJobError: If the job has not been saved.
        """
        notification = JobNotification.for_job(job)
        priority = self.broker_priority(job)
        deliver_at = run_at or job.run_at

        try:
            await self._broker.publish(
                notification.to_bytes(),
                priority=priority,
                run_at=deliver_at,
            )
        except Exception as e:
            logger.error(
                f"Failed to publish job notification: {e}",
                extra={"job_id": job.id, "error": str(e)}
            )
            self._metrics.record_notification_failed()
            if self.exception_reporter is not None:
                self.exception_reporter.notify(e)
            return

        self._metrics.record_notification_published(priority.value)
        logger.debug(
            "Published job notification",
            extra={
                "job_id": job.id,
                "priority": priority.value,
                "run_at": deliver_at.isoformat() if deliver_at else None,
            }
        )

    async def on_commit(self, event: CommitEvent) -> None:
        """
        Commit hook: publish after a job is created or updated.

        Destroyed and rolled-back rows, internal mutations (lock stamps made
        while reserving) and permanently failed jobs publish nothing.
        """
        if event.kind not in (ChangeKind.CREATE, ChangeKind.UPDATE):
            return
        if event.internal or event.job.failed_at is not None:
            return
        await self.publish(event.job)
