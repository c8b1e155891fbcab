"""
Job reservation.

Turns a broker notification ("this job might be ready") into a decision
checked against the job store: run the job now, drop the notification, or
schedule a later check. Every popped message is acknowledged exactly once,
either here when the job will not run, or by ``invoke_job`` after the job
has run.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from pydantic import ValidationError

from jobwire.broker.base import Broker, BrokerMessage
from jobwire.constants import ReservationOutcome
from jobwire.db.models import Job
from jobwire.db.store import JobStore
from jobwire.fingerprint import as_utc, job_fingerprint
from jobwire.notifier import Notifier
from jobwire.observability.metrics import MetricsCollector, get_metrics
from jobwire.types.events import JobNotification
from jobwire.worker.external import ExternalHandlerRegistry

logger = logging.getLogger(__name__)

_RUNNABLE = (ReservationOutcome.ACQUIRED, ReservationOutcome.STALE_LOCK)


@dataclass
class _Verdict:
    """What the lock decision saw, kept for the steps after the transaction."""

    outcome: ReservationOutcome = ReservationOutcome.MISSING
    job: Job | None = None


class ReservationManager:
    """
    Reserves jobs for a worker from broker notifications.

    One instance per worker process, owning its broker connection.
    """

    def __init__(
        self,
        store: JobStore,
        broker: Broker,
        notifier: Notifier,
        max_run_duration: timedelta,
        idle_delay: float = 1.0,
        pop_timeout: float | None = None,
        external_handlers: ExternalHandlerRegistry | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the reservation manager.

        Args:
            store: The job store.
            broker: Broker to pop notifications from.
            notifier: Notifier used to schedule recovery checks.
            max_run_duration: How long a lock is trusted before its owner is
                presumed to have crashed.
            idle_delay: Seconds to wait after an empty pop.
            pop_timeout: Seconds a single pop may block.
            external_handlers: Handlers for non-job messages.
            metrics: Metrics collector. Uses the process-wide one if not provided.
        """
        self._store = store
        self._broker = broker
        self._notifier = notifier
        self.max_run_duration = max_run_duration
        self.idle_delay = idle_delay
        self.pop_timeout = pop_timeout
        self.external_handlers = external_handlers or ExternalHandlerRegistry()
        self._metrics = metrics or get_metrics()

    async def reserve(
        self,
        worker_id: str,
        cancel: asyncio.Event | None = None,
    ) -> Job | None:
        """
        Pop one notification and decide what to do with its job.

        Args:
            worker_id: Identity recorded as the lock owner.
            cancel: Set to interrupt a blocking pop.

        Returns:
            A locked job carrying the unacknowledged message in
            ``attached_message``, or None when there is nothing to run.

        Raises:
            PopCancelledError: If ``cancel`` fires while waiting on the broker.
            StoreError: If the job store fails; the message is left
                unacknowledged for redelivery.
        """
        message = await self._broker.pop(timeout=self.pop_timeout, cancel=cancel)
        if message is None:
            self._metrics.record_reservation(ReservationOutcome.EMPTY.value)
            await self._idle(cancel)
            return None

        try:
            notification = JobNotification.from_bytes(message.payload)
        except ValidationError:
            await self._handle_external(message)
            return None

        now = await self._store.db_time_now()
        verdict = _Verdict()

        def decide(job: Job) -> bool:
            verdict.job = job
            verdict.outcome = self._classify(job, notification, now)
            return verdict.outcome in _RUNNABLE

        job = await self._store.acquire_locked_job(notification.job_id, worker_id, decide)
        self._metrics.record_reservation(verdict.outcome.value)

        if job is not None:
            if verdict.outcome == ReservationOutcome.STALE_LOCK:
                logger.warning(
                    "Recovered job from stale lock",
                    extra={"job_id": job.id, "worker_id": worker_id}
                )
            job.attached_message = message
            return job

        await self._ack(message, notification.job_id, verdict.outcome)

        if verdict.outcome == ReservationOutcome.HEALTHY_LOCK and verdict.job is not None:
            await self._schedule_recovery_check(verdict.job)
        return None

    async def _idle(self, cancel: asyncio.Event | None) -> None:
        """Back off after an empty pop, returning early once ``cancel`` is set."""
        if cancel is None:
            await asyncio.sleep(self.idle_delay)
            return
        try:
            await asyncio.wait_for(cancel.wait(), timeout=self.idle_delay)
        except TimeoutError:
            pass

    def _classify(
        self,
        job: Job,
        notification: JobNotification,
        now: datetime,
    ) -> ReservationOutcome:
        if job.is_failed:
            return ReservationOutcome.FAILED

        if job_fingerprint(job) != notification.fingerprint:
            # The row changed after this notification was produced; the
            # change published its own, newer notification.
            return ReservationOutcome.STALE

        if not job.is_locked:
            return ReservationOutcome.ACQUIRED

        lock_age = now - as_utc(job.locked_at)
        if lock_age < self.max_run_duration:
            return ReservationOutcome.HEALTHY_LOCK
        return ReservationOutcome.STALE_LOCK

    async def _schedule_recovery_check(self, job: Job) -> None:
        """Re-check the job once its current lock could have gone stale."""
        run_at = as_utc(job.locked_at) + self.max_run_duration
        logger.info(
            "Job is locked by another worker, scheduling recovery check",
            extra={"job_id": job.id, "locked_by": job.locked_by, "run_at": run_at.isoformat()}
        )
        await self._notifier.publish(job, run_at=run_at)

    async def _handle_external(self, message: BrokerMessage) -> None:
        self._metrics.record_reservation(ReservationOutcome.EXTERNAL.value)
        try:
            if not await self.external_handlers.dispatch(message):
                logger.warning(
                    "Dropping broker message with no handler",
                    extra={"payload": message.payload[:200].decode("utf-8", "replace")}
                )
        finally:
            await message.ack()
            self._metrics.record_message_acked("reserve")

    async def _ack(
        self,
        message: BrokerMessage,
        job_id: int,
        outcome: ReservationOutcome,
    ) -> None:
        await message.ack()
        self._metrics.record_message_acked("reserve")
        logger.debug(
            "Acknowledged job notification without running it",
            extra={"job_id": job_id, "outcome": outcome.value}
        )
