"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from jobwire.config import get_settings
from jobwire.db.events import JobSession

logger = logging.getLogger(__name__)


def _configure_sqlite(engine: AsyncEngine) -> None:
    """
    Make SQLite transactions take the write lock up front.

    pysqlite defers BEGIN until the first write, which would let two
    lock decisions on the same row interleave. BEGIN IMMEDIATE serializes
    them the way SELECT ... FOR UPDATE does on PostgreSQL.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine(database_url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    """
    Create the async database engine.

    Args:
        database_url: Overrides the configured database URL.
        echo: Overrides SQL echoing (defaults to DEBUG logging).

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    settings = get_settings()
    url = database_url or settings.database_url
    if echo is None:
        echo = settings.log_level == "DEBUG"

    if url.startswith("sqlite"):
        engine = create_async_engine(url, poolclass=NullPool, echo=echo)
        _configure_sqlite(engine)
    else:
        engine = create_async_engine(
            url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            echo=echo,
            pool_pre_ping=True,
        )

    logger.info("Database engine created", extra={"dialect": engine.dialect.name})
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create the session factory used by the job store.

    Sessions record job changes so commit hooks can run after commit.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        sync_session_class=JobSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def close_engine(engine: AsyncEngine) -> None:
    """
    Close the database connection.
    Should be called on process shutdown.
    """
    await engine.dispose()
    logger.info("Database connection closed")
