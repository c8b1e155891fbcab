"""
Broker wire types.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict

from jobwire.errors import UnpersistedJobError
from jobwire.fingerprint import format_timestamp, job_fingerprint


class JobNotification(BaseModel):
    """
    Notification that a job might be ready to run.

    Carries only enough to check the job store: the id, the row version the
    producer saw and its fingerprint. Notifications are disposable and may
    arrive late, more than once, or after the row has moved on.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    job_id: int
    last_modified_at: str
    fingerprint: str

    @classmethod
    def for_job(cls, job: Any) -> "JobNotification":
        """Build the notification describing a job's current row version."""
        if job.id is None:
            raise UnpersistedJobError("cannot publish a job that has not been saved")
        return cls(
            job_id=job.id,
            last_modified_at=format_timestamp(job.last_modified_at),
            fingerprint=job_fingerprint(job),
        )

    @classmethod
    def from_bytes(cls, payload: bytes) -> "JobNotification":
        """
        Parse a wire payload.

        Raises:
            pydantic.ValidationError: If the payload is not a job notification.
        """
        return cls.model_validate_json(payload)

    def to_bytes(self) -> bytes:
        """Serialize to the JSON wire format."""
        return self.model_dump_json().encode("utf-8")
