"""
Worker process for executing jobs.

The worker blocks on the broker for job notifications, reserves the job in
the job store, performs it, and records completion or failure.
"""

import asyncio
import logging
import signal
import time
from datetime import timedelta

from jobwire.config import Settings, get_settings
from jobwire.db.models import Job
from jobwire.db.store import JobStore
from jobwire.errors import PopCancelledError
from jobwire.observability.logging import bind_context, setup_logging
from jobwire.observability.metrics import get_metrics, setup_metrics
from jobwire.observability.tracing import get_tracer, setup_tracing
from jobwire.reservation import ReservationManager
from jobwire.runtime import Runtime, create_runtime, default_worker_id
from jobwire.worker.external import ExternalHandlerRegistry
from jobwire.worker.invocation import invoke_job

logger = logging.getLogger(__name__)


class Worker:
    """
    Job worker running a reserve -> invoke loop.

    Features:
    - Blocks on the broker instead of polling the job store
    - Job store row locks decide which worker runs a job
    - Graceful shutdown on SIGTERM/SIGINT (the running job finishes first)
    - Retry with backoff and permanent failure after max attempts
    """

    def __init__(
        self,
        store: JobStore,
        reservations: ReservationManager,
        worker_id: str | None = None,
        poll_interval: float | None = None,
    ):
        """
        Initialize the worker.

        Args:
            store: The job store.
            reservations: Reservation manager bound to this process's broker.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            poll_interval: Seconds to back off after an unexpected error.
        """
        settings = get_settings()

        self.worker_id = worker_id or settings.worker_id or default_worker_id()
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds

        self._store = store
        self._reservations = reservations
        self._stop_event = asyncio.Event()
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Run until stopped."""
        logger.info("Worker starting", extra={"worker_id": self.worker_id})
        bind_context(worker_id=self.worker_id)
        self._stop_event.clear()

        while not self._stop_event.is_set():
            try:
                await self.work_once()
            except PopCancelledError:
                break
            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id}
                )
                await asyncio.sleep(self.poll_interval)

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._stop_event.set()

    async def work_once(self) -> bool:
        """
        Reserve and run at most one job.

        Returns:
            True if a job was run.
        """
        job = await self._reservations.reserve(self.worker_id, cancel=self._stop_event)
        if job is None:
            return False

        await self._execute_job(job)
        return True

    async def _execute_job(self, job: Job) -> None:
        """
        Execute a reserved job and record the outcome.

        Args:
            job: The locked job, carrying its broker message.
        """
        start_time = time.monotonic()
        job_id = job.id

        logger.info(
            "Executing job",
            extra={"job_id": job_id, "handler": job.handler, "attempt": job.attempts + 1}
        )

        with get_tracer().start_as_current_span("invoke_job") as span:
            span.set_attribute("job_id", job_id)
            span.set_attribute("handler", job.handler)
            span.set_attribute("attempt", job.attempts + 1)

            try:
                await invoke_job(job)
            except Exception as e:
                duration = time.monotonic() - start_time
                span.record_exception(e)
                logger.warning(
                    "Job failed",
                    extra={"job_id": job_id, "error": str(e), "duration": f"{duration:.2f}s"}
                )
                await self._store.record_failure(
                    job_id,
                    self.worker_id,
                    error=f"{type(e).__name__}: {e}",
                )
                self._metrics.record_job_completed(job.handler, "failed", duration)
                return

        duration = time.monotonic() - start_time
        await self._store.complete_job(job_id, self.worker_id)
        self._metrics.record_job_completed(job.handler, "succeeded", duration)


async def build_worker(
    settings: Settings,
    runtime: Runtime,
    worker_id: str,
    external_handlers: ExternalHandlerRegistry | None = None,
) -> Worker:
    """
    Assemble a worker and prepare its external handlers.

    Args:
        settings: Application settings.
        runtime: Connected store, broker and notifier.
        worker_id: Lock owner and broker consumer name.
        external_handlers: Handlers for non-job messages. Defaults to the
            handlers named in ``settings.external_handlers``.

    Returns:
        A worker ready to start.
    """
    if external_handlers is None:
        external_handlers = ExternalHandlerRegistry.from_import_paths(
            settings.external_handlers
        )
    await external_handlers.setup(runtime.broker)

    reservations = ReservationManager(
        store=runtime.store,
        broker=runtime.broker,
        notifier=runtime.notifier,
        max_run_duration=timedelta(seconds=settings.worker_max_run_seconds),
        idle_delay=settings.worker_idle_delay_seconds,
        pop_timeout=settings.broker_pop_timeout_seconds,
        external_handlers=external_handlers,
    )
    return Worker(runtime.store, reservations, worker_id=worker_id)


async def run_async(external_handlers: ExternalHandlerRegistry | None = None) -> None:
    """
    Run the worker asynchronously.

    Args:
        external_handlers: Overrides the handlers configured in settings.
    """
    setup_logging()
    settings = get_settings()
    setup_metrics(settings.prometheus_port)
    setup_tracing()

    worker_id = settings.worker_id or default_worker_id()
    runtime = create_runtime(settings, consumer=worker_id)
    try:
        worker = await build_worker(settings, runtime, worker_id, external_handlers)
    except Exception:
        await runtime.close()
        raise

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        await runtime.close()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
