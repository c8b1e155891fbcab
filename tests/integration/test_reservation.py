"""
Integration tests for job reservation.
"""

import asyncio
import time
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from jobwire.constants import ReservationOutcome
from jobwire.db import JobStore
from jobwire.errors import PopCancelledError, StoreError
from jobwire.fingerprint import as_utc
from jobwire.observability.metrics import MetricsCollector
from jobwire.reservation import ReservationManager
from jobwire.types.events import JobNotification
from jobwire.worker.external import ExternalHandlerRegistry
from jobwire.worker.invocation import invoke_job

WORKER = "worker-1"
MAX_RUN_DURATION = timedelta(seconds=600)


def outcome_count(metrics: MetricsCollector, outcome: ReservationOutcome) -> float:
    value = metrics._registry.get_sample_value("reservations_total", {"outcome": outcome.value})
    return value or 0


class TestReserve:
    """Tests for ReservationManager.reserve."""

    async def test_acquires_unlocked_job(
        self,
        reservations: ReservationManager,
        store: JobStore,
        broker,
        metrics,
    ):
        """A current notification for an unlocked job reserves it."""
        job = await store.create_job("echo")
        message = broker.queue[0]

        reserved = await reservations.reserve(WORKER)

        assert reserved.id == job.id
        assert reserved.locked_by == WORKER
        assert reserved.attached_message is message
        assert message.acked is False
        assert outcome_count(metrics, ReservationOutcome.ACQUIRED) == 1

    async def test_lock_stamp_does_not_publish(
        self,
        reservations: ReservationManager,
        store: JobStore,
        broker,
    ):
        await store.create_job("echo")

        await reservations.reserve(WORKER)

        assert len(broker.published) == 1
        assert not broker.queue

    async def test_save_after_lock_stamp_publishes(
        self,
        reservations: ReservationManager,
        store: JobStore,
        broker,
    ):
        """The lock stamp is silent, but later ordinary saves of the job publish again."""
        job = await store.create_job("echo")
        await reservations.reserve(WORKER)
        assert len(broker.published) == 1

        updated = await store.update_job(job.id, payload={"message": "changed"})

        assert len(broker.published) == 2
        assert JobNotification.from_bytes(broker.published[1].payload) == (
            JobNotification.for_job(updated)
        )

    async def test_invocation_acks_once(
        self,
        reservations: ReservationManager,
        store: JobStore,
        broker,
    ):
        await store.create_job("echo")
        message = broker.queue[0]

        job = await reservations.reserve(WORKER)
        await invoke_job(job)

        assert message.ack_count == 1

    async def test_empty_pop_backs_off(
        self,
        store: JobStore,
        broker,
        notifier,
        metrics,
    ):
        """An empty pop waits for the idle delay before returning."""
        manager = ReservationManager(
            store=store,
            broker=broker,
            notifier=notifier,
            max_run_duration=MAX_RUN_DURATION,
            idle_delay=0.05,
            metrics=metrics,
        )

        started = time.monotonic()
        assert await manager.reserve(WORKER) is None

        assert time.monotonic() - started >= 0.05
        assert outcome_count(metrics, ReservationOutcome.EMPTY) == 1

    async def test_idle_backoff_ends_on_cancel(
        self,
        store: JobStore,
        broker,
        notifier,
        metrics,
    ):
        """Setting the cancel event cuts the idle wait short."""
        manager = ReservationManager(
            store=store,
            broker=broker,
            notifier=notifier,
            max_run_duration=MAX_RUN_DURATION,
            idle_delay=5,
            metrics=metrics,
        )
        cancel = asyncio.Event()

        async def cancel_soon():
            await asyncio.sleep(0.05)
            cancel.set()

        canceller = asyncio.create_task(cancel_soon())
        started = time.monotonic()
        result = await asyncio.wait_for(manager.reserve(WORKER, cancel=cancel), timeout=1)
        await canceller

        assert result is None
        assert time.monotonic() - started < 1
        assert outcome_count(metrics, ReservationOutcome.EMPTY) == 1

    async def test_missing_job(
        self,
        reservations: ReservationManager,
        store: JobStore,
        broker,
        metrics,
    ):
        """Notifications for deleted jobs are acknowledged and dropped."""
        job = await store.create_job("echo")
        message = broker.queue[0]
        await store.destroy_job(job.id)

        assert await reservations.reserve(WORKER) is None

        assert message.ack_count == 1
        assert outcome_count(metrics, ReservationOutcome.MISSING) == 1

    async def test_failed_job(
        self,
        reservations: ReservationManager,
        store: JobStore,
        broker,
        metrics,
    ):
        job = await store.create_job("echo")
        broker.queue.clear()
        failed = await store.update_job(job.id, failed_at=await store.db_time_now())
        message = broker.push_notification(failed)

        assert await reservations.reserve(WORKER) is None

        assert message.ack_count == 1
        assert (await store.get_job(job.id)).locked_by is None
        assert outcome_count(metrics, ReservationOutcome.FAILED) == 1

    async def test_stale_notification(
        self,
        reservations: ReservationManager,
        store: JobStore,
        broker,
        metrics,
    ):
        """A superseded notification is dropped; the newer one reserves the job."""
        job = await store.create_job("echo")
        await store.update_job(job.id, last_modified_at=job.last_modified_at + timedelta(seconds=10))
        stale, current = list(broker.queue)

        assert await reservations.reserve(WORKER) is None
        assert stale.ack_count == 1
        assert (await store.get_job(job.id)).locked_by is None
        assert outcome_count(metrics, ReservationOutcome.STALE) == 1

        reserved = await reservations.reserve(WORKER)
        assert reserved.id == job.id
        assert reserved.attached_message is current

    async def test_healthy_lock_schedules_recovery_check(
        self,
        reservations: ReservationManager,
        store: JobStore,
        broker,
        metrics,
    ):
        """A job locked by a live worker is re-checked once its lock could be stale."""
        job = await store.create_job("echo")
        broker.queue.clear()
        now = await store.db_time_now()
        locked = await store.update_job(job.id, locked_at=now - timedelta(seconds=5), locked_by="other")
        message = broker.queue[0]

        assert await reservations.reserve(WORKER) is None

        assert message.ack_count == 1
        assert (await store.get_job(job.id)).locked_by == "other"
        recovery = broker.published[-1]
        assert as_utc(recovery.run_at) == as_utc(locked.locked_at) + MAX_RUN_DURATION
        assert outcome_count(metrics, ReservationOutcome.HEALTHY_LOCK) == 1

    async def test_stale_lock_is_recovered(
        self,
        reservations: ReservationManager,
        store: JobStore,
        broker,
        metrics,
    ):
        """A lock older than the maximum run duration is taken over."""
        job = await store.create_job("echo")
        broker.queue.clear()
        now = await store.db_time_now()
        await store.update_job(
            job.id,
            locked_at=now - MAX_RUN_DURATION - timedelta(seconds=1),
            locked_by="crashed-worker",
        )
        message = broker.queue[0]

        reserved = await reservations.reserve(WORKER)

        assert reserved.id == job.id
        assert reserved.locked_by == WORKER
        assert message.acked is False
        assert outcome_count(metrics, ReservationOutcome.STALE_LOCK) == 1

    async def test_store_error_leaves_message_pending(
        self,
        reservations: ReservationManager,
        store: JobStore,
        broker,
        monkeypatch,
    ):
        """Job store failures propagate and the message is redelivered later."""
        await store.create_job("echo")
        message = broker.queue[0]
        monkeypatch.setattr(store, "db_time_now", AsyncMock(side_effect=StoreError("down")))

        with pytest.raises(StoreError):
            await reservations.reserve(WORKER)

        assert message.acked is False

    async def test_cancelled_pop(self, reservations: ReservationManager):
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(PopCancelledError):
            await reservations.reserve(WORKER, cancel=cancel)

    async def test_concurrent_workers_reserve_once(
        self,
        reservations: ReservationManager,
        store: JobStore,
        broker,
    ):
        """Duplicate deliveries of one notification reserve the job exactly once."""
        await store.create_job("echo")
        original = broker.queue[0]
        duplicate = broker.push(original.payload)

        results = await asyncio.gather(
            reservations.reserve("worker-1"),
            reservations.reserve("worker-2"),
        )

        reserved = [job for job in results if job is not None]
        assert len(reserved) == 1
        assert original.ack_count + duplicate.ack_count == 1


class TestExternalMessages:
    """Tests for non-job broker traffic."""

    async def test_claimed_message(self, store: JobStore, broker, notifier, metrics):
        handled = []

        class SignupHandler:
            async def setup(self, broker) -> None:
                pass

            def claims(self, message) -> bool:
                return message.payload.startswith(b"signup")

            async def handle(self, payload: bytes) -> None:
                handled.append(payload)

        manager = ReservationManager(
            store=store,
            broker=broker,
            notifier=notifier,
            max_run_duration=MAX_RUN_DURATION,
            external_handlers=ExternalHandlerRegistry([SignupHandler()]),
            metrics=metrics,
        )
        message = broker.push(b"signup:42")

        assert await manager.reserve(WORKER) is None

        assert handled == [b"signup:42"]
        assert message.ack_count == 1
        assert outcome_count(metrics, ReservationOutcome.EXTERNAL) == 1

    async def test_unclaimed_message_is_dropped(
        self,
        reservations: ReservationManager,
        broker,
    ):
        message = broker.push(b'{"event": "unknown"}')

        assert await reservations.reserve(WORKER) is None

        assert message.ack_count == 1
