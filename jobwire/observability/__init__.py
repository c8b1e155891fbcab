"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from jobwire.observability.logging import bind_context, setup_logging
from jobwire.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from jobwire.observability.tracing import get_tracer, instrument_sqlalchemy, setup_tracing

__all__ = [
    "setup_logging",
    "bind_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
    "instrument_sqlalchemy",
]
