"""
SQLAlchemy database models.
Defines the Job table.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobwire.constants import DEFAULT_JOB_PRIORITY, DEFAULT_MAX_ATTEMPTS
from jobwire.fingerprint import as_utc


class UTCDateTime(TypeDecorator):
    """
    Time zone aware timestamp stored and loaded as UTC.

    Backends without a time zone type (SQLite) keep only the wall-clock
    value, so values are converted to UTC before they are written.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        return as_utc(value)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        return as_utc(value)

class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of background work.

    This is the authoritative source of truth for job state. Broker
    notifications are only hints that get checked against this table.

    Key constraints:
    - last_modified_at is bumped by the database clock on every update
    - locked_at and locked_by are either both set or both null
    - a non-null failed_at means the job is never dispatched again
    """

    __tablename__ = "jobs"
    __mapper_args__ = {"eager_defaults": True}

    # Primary key
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    # Work to perform
    handler: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"),
        nullable=False,
        default=dict,
    )

    # Priority and retry tracking
    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_JOB_PRIORITY,
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_MAX_ATTEMPTS,
    )

    # Scheduling
    run_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        server_default=func.now(),
    )

    # Lock management
    locked_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    locked_by: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )

    # Failure tracking
    failed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        server_default=func.now(),
    )
    last_modified_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    # Broker message that led to this job being reserved. Never persisted.
    attached_message = None

    __table_args__ = (
        # Index for the republisher sweep
        Index("ix_jobs_failed_at_run_at", "failed_at", "run_at"),
    )

    @property
    def is_locked(self) -> bool:
        """Check if a worker currently holds the job."""
        return self.locked_at is not None

    @property
    def is_failed(self) -> bool:
        """Check if the job has permanently failed."""
        return self.failed_at is not None

    @property
    def payload_object(self) -> Any:
        """The executable unit for this job."""
        from jobwire.worker.handlers import JobPayload

        return JobPayload.for_job(self)

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, handler={self.handler}, "
            f"attempts={self.attempts}/{self.max_attempts}, locked_by={self.locked_by})"
        )
