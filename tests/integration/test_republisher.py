"""
Integration tests for the republisher.
"""

from jobwire.db import JobStore
from jobwire.republisher import Republisher
from jobwire.types.events import JobNotification


class TestRepublisher:
    """Tests for republishing dispatchable jobs."""

    async def test_run_once_republishes_dispatchable_jobs(
        self,
        store: JobStore,
        notifier,
        broker,
    ):
        live = [await store.create_job("echo") for _ in range(3)]
        dead = await store.create_job("echo")
        await store.update_job(dead.id, failed_at=await store.db_time_now())
        broker.published.clear()

        republisher = Republisher(store, notifier, interval_seconds=60, batch_size=2)
        count = await republisher.run_once()

        assert count == 3
        job_ids = [JobNotification.from_bytes(m.payload).job_id for m in broker.published]
        assert job_ids == [job.id for job in live]

    async def test_includes_locked_jobs(self, store: JobStore, notifier, broker):
        """Locked jobs are republished so a crashed owner is noticed."""
        job = await store.create_job("echo")
        await store.acquire_locked_job(job.id, "worker-1", lambda j: True)
        broker.published.clear()

        count = await Republisher(store, notifier, interval_seconds=60).run_once()

        assert count == 1
        assert JobNotification.from_bytes(broker.published[0].payload).job_id == job.id
