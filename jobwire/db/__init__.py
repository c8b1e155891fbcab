"""
Database module.
Contains database connection, models, commit hooks and the job store.
"""

from jobwire.db.connection import close_engine, create_engine, create_session_factory
from jobwire.db.events import ChangeKind, CommitEvent, CommitHook
from jobwire.db.models import Base, Job
from jobwire.db.store import JobStore

__all__ = [
    "create_engine",
    "create_session_factory",
    "close_engine",
    "ChangeKind",
    "CommitEvent",
    "CommitHook",
    "JobStore",
    "Job",
    "Base",
]
