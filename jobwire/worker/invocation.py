"""
Job invocation.
"""

import logging

from jobwire.broker.base import BrokerMessage
from jobwire.db.models import Job
from jobwire.observability.metrics import get_metrics
from jobwire.types.job import JobResult

logger = logging.getLogger(__name__)


async def invoke_job(job: Job) -> JobResult:
    """
    Perform a job and acknowledge the broker message that delivered it.

    The acknowledgment runs on every exit path, after the payload finished
    or raised, and only once: the message reference is cleared before
    acknowledging. Payload failures propagate to the caller afterwards.

    A failed acknowledgment is logged and never replaces the payload's
    outcome. The message stays pending and is redelivered later, where the
    reservation drops it as missing or stale.

    Args:
        job: A job returned by ``ReservationManager.reserve`` (or loaded any
            other way, in which case there is nothing to acknowledge).

    Returns:
        The handler's result.
    """
    try:
        return await job.payload_object.perform()
    finally:
        message, job.attached_message = job.attached_message, None
        if message is not None:
            await _acknowledge(job, message)


async def _acknowledge(job: Job, message: BrokerMessage) -> None:
    try:
        await message.ack()
    except Exception as e:
        logger.error(
            f"Failed to acknowledge job message: {e}",
            extra={"job_id": job.id, "error": str(e)}
        )
        get_metrics().record_message_ack_failed()
        return

    get_metrics().record_message_acked("invoke")
    logger.debug("Acknowledged job message after invocation", extra={"job_id": job.id})
