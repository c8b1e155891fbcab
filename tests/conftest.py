"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator
from datetime import timedelta

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry
from sqlalchemy.ext.asyncio import AsyncEngine

from jobwire.constants import DEFAULT_PRIORITY_MAP
from jobwire.db import Base, JobStore, close_engine, create_engine, create_session_factory
from jobwire.notifier import Notifier
from jobwire.observability.metrics import MetricsCollector
from jobwire.reservation import ReservationManager
from tests.fakes import FakeBroker

# Set TEST_DATABASE_URL to run against PostgreSQL; defaults to a SQLite file
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

MAX_RUN_DURATION = timedelta(seconds=600)


@pytest.fixture
def database_url(tmp_path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}"


@pytest_asyncio.fixture
async def engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an engine with a fresh jobs table."""
    engine = create_engine(database_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await close_engine(engine)


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics collector on a private registry."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def notifier(broker: FakeBroker, metrics: MetricsCollector) -> Notifier:
    return Notifier(broker, priority_map=DEFAULT_PRIORITY_MAP, metrics=metrics)


@pytest.fixture
def store(engine: AsyncEngine, notifier: Notifier) -> JobStore:
    """Job store with the notifier subscribed to commits."""
    store = JobStore(create_session_factory(engine))
    store.add_commit_hook(notifier.on_commit)
    return store


@pytest.fixture
def reservations(
    store: JobStore,
    broker: FakeBroker,
    notifier: Notifier,
    metrics: MetricsCollector,
) -> ReservationManager:
    return ReservationManager(
        store=store,
        broker=broker,
        notifier=notifier,
        max_run_duration=MAX_RUN_DURATION,
        idle_delay=0.01,
        metrics=metrics,
    )
