"""
Type definitions for jobwire.
Contains input/output type definitions for all functions, grouped by module.
"""

from jobwire.types.events import JobNotification
from jobwire.types.job import JobContext, JobResult

__all__ = [
    # Wire types
    "JobNotification",
    # Job types
    "JobContext",
    "JobResult",
]
