"""
Exception types shared across the job store, broker and workers.
"""


class JobWireError(Exception):
    """Base class for all jobwire errors."""


class UnpersistedJobError(JobWireError, ValueError):
    """A notification was requested for a job that has no identity yet."""


class BrokerTransportError(JobWireError):
    """The broker could not be reached or rejected the request."""


class StoreError(JobWireError):
    """Reading or writing a job row failed."""


class PopCancelledError(JobWireError):
    """A blocking broker pop was interrupted by its cancellation token."""


class UnknownHandlerError(JobWireError, LookupError):
    """A job names a handler that is not registered."""


class JobExecutionError(JobWireError):
    """A job handler reported failure."""
