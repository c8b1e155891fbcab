"""
Job repository for database operations.
Session-scoped queries used by the job store.
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from jobwire.constants import DEFAULT_JOB_PRIORITY, DEFAULT_MAX_ATTEMPTS
from jobwire.db.models import Job
from jobwire.fingerprint import as_utc

logger = logging.getLogger(__name__)


class JobRepository:
    """
    Repository for job database operations.

    Every method runs inside the caller's session and transaction; nothing
    here commits.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def db_time_now(self) -> datetime:
        """
        Get the current time according to the database.

        Returns:
            Aware UTC datetime from the store clock.
        """
        result = await self._session.execute(select(func.now()))
        return as_utc(result.scalar_one())

    async def create_job(
        self,
        handler: str,
        payload: dict[str, Any] | None = None,
        priority: int = DEFAULT_JOB_PRIORITY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        run_at: datetime | None = None,
    ) -> Job:
        """
        Insert a new job.

        Args:
            handler: Registered handler name.
            payload: Handler arguments.
            priority: Job priority, mapped to a broker lane on publish.
            max_attempts: Attempts before the job is marked failed.
            run_at: Earliest execution time. Defaults to the store clock.

        Returns:
            The flushed Job with server-generated fields loaded.
        """
        job = Job(
            handler=handler,
            payload=payload or {},
            priority=priority,
            max_attempts=max_attempts,
        )
        if run_at is not None:
            job.run_at = run_at

        self._session.add(job)
        await self._session.flush()
        await self._session.refresh(job)

        logger.info(
            "Created new job",
            extra={"job_id": job.id, "handler": handler}
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
        stmt = select(Job).where(Job.id == job_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_job_for_update(self, job_id: int) -> Job | None:
        """
        Get a job by ID holding an exclusive row lock until the transaction ends.

        Concurrent callers for the same id block here until the holder
        commits or rolls back, then see the committed row.

        Args:
            job_id: The job identifier.

        Returns:
            The Job or None if not found.
        """
        stmt = (
            select(Job)
            .where(Job.id == job_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_dispatchable_jobs(
        self,
        after_id: int = 0,
        limit: int = 500,
    ) -> Sequence[Job]:
        """
        List jobs that may still run, in id order.

        Args:
            after_id: Only return jobs with a larger id (keyset pagination).
            limit: Maximum number of jobs to return.

        Returns:
            Jobs with no failed_at.
        """
        stmt = (
            select(Job)
            .where(Job.failed_at.is_(None), Job.id > after_id)
            .order_by(Job.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

