"""
Republisher for restoring broker state from the job store.

Broker notifications can be lost (a broker restart without persistence, a
publish that failed after commit). The republisher walks every job that can
still run and publishes a fresh notification for it. Workers discard the
duplicates through the fingerprint check, so sweeping more often than needed
only costs broker traffic.
"""

import asyncio
import logging
import signal

from jobwire.config import get_settings
from jobwire.db.store import JobStore
from jobwire.notifier import Notifier
from jobwire.observability.logging import setup_logging
from jobwire.observability.metrics import setup_metrics
from jobwire.observability.tracing import get_tracer, setup_tracing
from jobwire.runtime import create_runtime, default_worker_id

logger = logging.getLogger(__name__)


class Republisher:
    """
    Periodic sweep publishing a notification for each dispatchable job.

    A job is dispatchable while it has not permanently failed. Locked jobs
    are included so that a crashed owner is eventually noticed.
    """

    def __init__(
        self,
        store: JobStore,
        notifier: Notifier,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
    ):
        """
        Initialize the republisher.

        Args:
            store: The job store.
            notifier: Notifier to publish through.
            interval_seconds: Seconds between sweeps.
            batch_size: Rows loaded per store query.
        """
        settings = get_settings()
        self.interval = interval_seconds or settings.republish_interval_seconds
        self.batch_size = batch_size or settings.republish_batch_size
        self._store = store
        self._notifier = notifier
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Start the republish loop."""
        logger.info(f"Republisher starting with interval {self.interval}s")
        self._stop_event.clear()

        while not self._stop_event.is_set():
            try:
                published = await self.run_once()
                logger.info(f"Republished {published} jobs")
            except Exception as e:
                logger.exception(f"Error in republisher loop: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Republisher stopped")

    async def stop(self) -> None:
        """Stop the republisher."""
        logger.info("Republisher stopping")
        self._stop_event.set()

    async def run_once(self) -> int:
        """
        Publish every dispatchable job once.

        Returns:
            Number of jobs published.
        """
        count = 0
        with get_tracer().start_as_current_span("republish_all") as span:
            async for job in self._store.iter_dispatchable_jobs(batch_size=self.batch_size):
                await self._notifier.publish(job)
                count += 1
            span.set_attribute("jobs", count)
        return count


async def run_async() -> None:
    """Run the republisher asynchronously."""
    setup_logging()
    settings = get_settings()
    setup_metrics(settings.prometheus_port)
    setup_tracing()

    runtime = create_runtime(settings, consumer=f"republisher-{default_worker_id()}")
    republisher = Republisher(runtime.store, runtime.notifier)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(republisher.stop())
        )

    try:
        await republisher.start()
    finally:
        await runtime.close()


def run() -> None:
    """Run the republisher."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
