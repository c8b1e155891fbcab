"""
Process wiring.

Builds the job store, broker and notifier a worker or republisher process
uses, and tears them down again on shutdown.
"""

import logging
import os
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from jobwire.broker.redis_streams import RedisStreamBroker
from jobwire.config import Settings
from jobwire.db.connection import close_engine, create_engine, create_session_factory
from jobwire.db.store import JobStore
from jobwire.notifier import Notifier
from jobwire.observability.tracing import instrument_sqlalchemy

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    """Hostname + PID, unique per process on a host."""
    return f"{os.uname().nodename}-{os.getpid()}"


@dataclass
class Runtime:
    """Per-process collaborators, connected and ready to use."""

    engine: AsyncEngine
    store: JobStore
    broker: RedisStreamBroker
    notifier: Notifier

    async def close(self) -> None:
        """Close the broker and database connections."""
        await self.broker.close()
        await close_engine(self.engine)
        logger.info("Runtime closed")


def create_runtime(settings: Settings, consumer: str) -> Runtime:
    """
    Connect to the job store and broker.

    Args:
        settings: Application settings.
        consumer: Broker consumer name for this process.

    Returns:
        Runtime with the notifier subscribed to job store commits.
    """
    engine = create_engine(settings.database_url)
    instrument_sqlalchemy(engine)

    broker = RedisStreamBroker.from_url(
        settings.redis_url,
        consumer=consumer,
        prefix=settings.broker_prefix,
        group=settings.broker_consumer_group,
        visibility_timeout_seconds=settings.broker_visibility_timeout_seconds,
    )
    notifier = Notifier(broker, priority_map=settings.priority_map)

    store = JobStore(create_session_factory(engine))
    store.add_commit_hook(notifier.on_commit)

    return Runtime(engine=engine, store=store, broker=broker, notifier=notifier)
