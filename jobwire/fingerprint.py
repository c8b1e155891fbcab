"""
Job fingerprints.

A fingerprint identifies one persisted version of a job row. Every committed
mutation bumps ``last_modified_at``, so a notification whose fingerprint no
longer matches the row has been superseded by a newer one.
"""

import hashlib
from datetime import UTC, datetime
from typing import Any


def as_utc(value: datetime) -> datetime:
    """
    Normalize a timestamp to an aware UTC datetime.

    Naive values are read as UTC, which is how the job store hands them back
    on backends without time zone support.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def format_timestamp(value: datetime) -> str:
    """Format a timestamp as second-precision ISO-8601 in UTC."""
    return as_utc(value).replace(microsecond=0).isoformat()


def fingerprint(job_id: int, last_modified_at: datetime) -> str:
    """
    Compute the fingerprint of a job version.

    Args:
        job_id: The job identifier.
        last_modified_at: The row's last modification time.

    Returns:
        Hex digest, stable across time zone representations of the same
        instant and insensitive to sub-second precision.
    """
    token = f"{job_id}:{format_timestamp(last_modified_at)}"
    return hashlib.sha1(token.encode("utf-8")).hexdigest()


def job_fingerprint(job: Any) -> str:
    """Fingerprint of a job row as currently loaded."""
    return fingerprint(job.id, job.last_modified_at)
