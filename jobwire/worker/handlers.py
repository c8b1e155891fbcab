"""
Job handlers registry and implementations.

Job handlers must be idempotent - a job may be performed again if the
worker running it crashes before recording completion.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from jobwire.errors import JobExecutionError, UnknownHandlerError
from jobwire.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[JobResult]]

# Handler registry
_handlers: dict[str, JobHandler] = {}


def register_handler(name: str) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a job handler.

    Args:
        name: The handler name stored on jobs.

    Returns:
        Decorator function.

    Example:
        @register_handler("send_email")
        async def handle_send_email(context: JobContext) -> JobResult:
            ...
    """
    def decorator(handler: JobHandler) -> JobHandler:
        _handlers[name] = handler
        logger.info(f"Registered handler for job type: {name}")
        return handler
    return decorator


def get_handler(name: str) -> JobHandler | None:
    """
    Get a handler by name.

    Args:
        name: The handler name.

    Returns:
        The handler function or None if not found.
    """
    return _handlers.get(name)


def list_handlers() -> list[str]:
    """List all registered handler names."""
    return list(_handlers.keys())


@dataclass
class JobPayload:
    """The executable unit of a job: a registered handler plus its context."""

    context: JobContext

    @classmethod
    def for_job(cls, job: Any) -> "JobPayload":
        return cls(
            context=JobContext(
                job_id=job.id,
                handler=job.handler,
                attempt=job.attempts + 1,
                max_attempts=job.max_attempts,
                payload=dict(job.payload or {}),
                locked_by=job.locked_by,
                locked_at=job.locked_at,
            )
        )

    async def perform(self) -> JobResult:
        """
        Run the handler.

        Raises:
            UnknownHandlerError: If the handler is not registered.
            JobExecutionError: If the handler reports failure.
        """
        handler = get_handler(self.context.handler)
        if handler is None:
            raise UnknownHandlerError(
                f"No handler registered for job type: {self.context.handler}"
            )

        result = await handler(self.context)
        if not result.success:
            raise JobExecutionError(result.error or "Unknown error")
        return result


# ============================================================================
# Built-in job handlers
# ============================================================================


@register_handler("echo")
async def handle_echo(context: JobContext) -> JobResult:
    """
    Echo handler for testing.

    Simply returns the input payload as output.
    """
    logger.info(
        "Echo job executing",
        extra={"job_id": context.job_id, "attempt": context.attempt}
    )

    return JobResult(
        success=True,
        output={"echo": context.payload},
    )


@register_handler("sleep")
async def handle_sleep(context: JobContext) -> JobResult:
    """
    Sleep handler for testing delays and lock expiry.

    Payload should contain:
    - duration_seconds: How long to sleep
    """
    duration = context.payload.get("duration_seconds", 1)

    logger.info(
        "Sleep job starting",
        extra={"job_id": context.job_id, "duration": duration}
    )

    await asyncio.sleep(duration)

    return JobResult(
        success=True,
        output={"slept_for": duration},
    )


@register_handler("failing_job")
async def handle_failing_job(context: JobContext) -> JobResult:
    """
    Handler that always fails - for testing retry logic.
    """
    logger.info(
        "Failing job executing (will fail)",
        extra={"job_id": context.job_id, "attempt": context.attempt}
    )

    return JobResult(
        success=False,
        error=f"Intentional failure on attempt {context.attempt}",
    )
