"""
Job store.

Owns transactions against the jobs table, the on-commit hook point, and the
exclusive lock primitive every worker uses to claim a job.
"""

import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobwire.constants import DEFAULT_JOB_PRIORITY, DEFAULT_MAX_ATTEMPTS
from jobwire.db.events import CommitEvent, CommitHook, drain_changes, mark_internal
from jobwire.db.models import Job
from jobwire.db.repository import JobRepository
from jobwire.errors import StoreError

logger = logging.getLogger(__name__)

LockDecision = Callable[[Job], bool | Awaitable[bool]]


def retry_backoff(attempts: int) -> timedelta:
    """Delay before the next attempt of a job that has failed ``attempts`` times."""
    return timedelta(seconds=attempts**4 + 5)


class JobStore:
    """
    Transactional access to job rows.

    Commit hooks subscribed with ``add_commit_hook`` are awaited after every
    transaction that touched a job row: once per row after a commit, and
    with ``ChangeKind.ROLLBACK`` after a rollback.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        hooks: Iterable[CommitHook] = (),
    ):
        """
        Initialize the store.

        Args:
            session_factory: Factory built by ``create_session_factory``.
            hooks: Initial commit hooks.
        """
        self._session_factory = session_factory
        self._hooks: list[CommitHook] = list(hooks)

    def add_commit_hook(self, hook: CommitHook) -> None:
        """Subscribe to committed job changes."""
        self._hooks.append(hook)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Run a block in a single transaction.

        Commits on normal exit and rolls back when the block raises.
        Database errors are re-raised as StoreError; anything else raised by
        the block propagates unchanged.

        Yields:
            AsyncSession: The session bound to the transaction.
        """
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    yield session
            except SQLAlchemyError as e:
                await self._dispatch(drain_changes(session, rolled_back=True))
                raise StoreError(f"Job store operation failed: {e}") from e
            except Exception:
                await self._dispatch(drain_changes(session, rolled_back=True))
                raise
            events = drain_changes(session)

        await self._dispatch(events)

    async def _dispatch(self, events: list[CommitEvent]) -> None:
        for commit_event in events:
            for hook in self._hooks:
                try:
                    await hook(commit_event)
                except Exception:
                    logger.exception(
                        "Commit hook failed",
                        extra={"job_id": commit_event.job.id, "kind": commit_event.kind.value}
                    )

    async def db_time_now(self) -> datetime:
        """
        Current time according to the job store.

        All staleness comparisons use this clock so workers with skewed
        clocks or time zones agree.
        """
        async with self.transaction() as session:
            return await JobRepository(session).db_time_now()

    async def create_job(
        self,
        handler: str,
        payload: dict[str, Any] | None = None,
        priority: int = DEFAULT_JOB_PRIORITY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        run_at: datetime | None = None,
    ) -> Job:
        """
        Create a job. Subscribers are notified once the insert commits.

        Args:
            handler: Registered handler name.
            payload: Handler arguments.
            priority: Job priority.
            max_attempts: Attempts before the job is marked failed.
            run_at: Earliest execution time.

        Returns:
            The created Job.
        """
        async with self.transaction() as session:
            job = await JobRepository(session).create_job(
                handler=handler,
                payload=payload,
                priority=priority,
                max_attempts=max_attempts,
                run_at=run_at,
            )
        return job

    async def get_job(self, job_id: int) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job identifier.

        Returns:
            The Job or None if not found.
        """
        async with self.transaction() as session:
            return await JobRepository(session).get_job(job_id)

    async def update_job(self, job_id: int, **changes: Any) -> Job | None:
        """
        Apply attribute changes to a job through ordinary persistence.

        Args:
            job_id: The job identifier.
            **changes: Column values to set.

        Returns:
            The updated Job or None if not found.
        """
        async with self.transaction() as session:
            job = await JobRepository(session).get_job_for_update(job_id)
            if job is None:
                return None
            for name, value in changes.items():
                setattr(job, name, value)
            await session.flush()
            await session.refresh(job)
        return job

    async def destroy_job(self, job_id: int) -> bool:
        """
        Delete a job.

        Args:
            job_id: The job identifier.

        Returns:
            True if a row was deleted.
        """
        async with self.transaction() as session:
            job = await JobRepository(session).get_job_for_update(job_id)
            if job is None:
                return False
            await session.delete(job)
        return True

    async def acquire_locked_job(
        self,
        job_id: int,
        worker_id: str,
        decide: LockDecision,
    ) -> Job | None:
        """
        Lock a job for a worker if ``decide`` accepts it.

        The row is read with an exclusive row lock, so concurrent callers
        for the same id are serialized and each sees the state committed by
        the previous one. ``decide`` receives the row exactly as persisted,
        before any lock stamp is applied, and may be a coroutine function.

        Accepting stamps ``locked_at`` with the store clock and ``locked_by``
        with ``worker_id``. That mutation is internal and does not notify
        commit hooks subscribers such as the Notifier.

        Exceptions raised by ``decide`` roll the transaction back and
        propagate.

        Args:
            job_id: The job identifier.
            worker_id: Identity recorded in ``locked_by``.
            decide: Accept/reject callback.

        Returns:
            The locked Job, or None if the job does not exist or was rejected.
        """
        async with self.transaction() as session:
            repo = JobRepository(session)
            job = await repo.get_job_for_update(job_id)
            if job is None:
                logger.debug("Lock target not found", extra={"job_id": job_id})
                return None

            accepted = decide(job)
            if inspect.isawaitable(accepted):
                accepted = await accepted
            if not accepted:
                return None

            now = await repo.db_time_now()
            mark_internal(session, job)
            job.locked_at = now
            job.locked_by = worker_id
            await session.flush()
            await session.refresh(job)

        logger.info(
            "Acquired job lock",
            extra={"job_id": job_id, "worker_id": worker_id}
        )
        return job

    async def complete_job(self, job_id: int, worker_id: str) -> bool:
        """
        Remove a successfully performed job.

        Args:
            job_id: The job identifier.
            worker_id: The worker identifier (must match locked_by).

        Returns:
            True if the job was removed.
        """
        async with self.transaction() as session:
            job = await JobRepository(session).get_job_for_update(job_id)
            if job is None:
                return False
            if job.locked_by != worker_id:
                logger.warning(
                    "Worker doesn't own job lock",
                    extra={"job_id": job_id, "worker_id": worker_id, "locked_by": job.locked_by}
                )
                return False
            await session.delete(job)

        logger.info("Job completed successfully", extra={"job_id": job_id})
        return True

    async def record_failure(
        self,
        job_id: int,
        worker_id: str,
        error: str,
    ) -> Job | None:
        """
        Handle job failure. Either reschedule with backoff or mark failed.

        Both paths release the lock through ordinary persistence; a
        rescheduled job therefore publishes a fresh notification for its new
        run_at, a failed one publishes nothing.

        Args:
            job_id: The job identifier.
            worker_id: The worker identifier (must match locked_by).
            error: Error message.

        Returns:
            Updated Job or None if the worker no longer owns it.
        """
        async with self.transaction() as session:
            repo = JobRepository(session)
            job = await repo.get_job_for_update(job_id)
            if job is None:
                return None

            if job.locked_by != worker_id:
                logger.warning(
                    "Worker doesn't own job lock",
                    extra={"job_id": job_id, "worker_id": worker_id, "locked_by": job.locked_by}
                )
                return None

            now = await repo.db_time_now()
            job.attempts += 1
            job.last_error = error
            job.locked_at = None
            job.locked_by = None

            if job.attempts >= job.max_attempts:
                job.failed_at = now
                logger.warning(
                    f"Job failed permanently after {job.attempts} attempts",
                    extra={"job_id": job_id, "error": error}
                )
            else:
                job.run_at = now + retry_backoff(job.attempts)
                logger.info(
                    "Job rescheduled for retry",
                    extra={"job_id": job_id, "attempt": job.attempts, "run_at": job.run_at.isoformat()}
                )

            await session.flush()
            await session.refresh(job)
        return job

    async def iter_dispatchable_jobs(self, batch_size: int = 500) -> AsyncIterator[Job]:
        """
        Iterate over every job that has not failed, in id order.

        Each batch is read in its own short transaction.

        Args:
            batch_size: Rows fetched per query.

        Yields:
            Job rows.
        """
        after_id = 0
        while True:
            async with self.transaction() as session:
                batch = await JobRepository(session).list_dispatchable_jobs(
                    after_id=after_id,
                    limit=batch_size,
                )
            if not batch:
                return
            for job in batch:
                yield job
            after_id = batch[-1].id
