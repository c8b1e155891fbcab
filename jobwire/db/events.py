"""
On-commit hook point for job rows.

Changes to ``Job`` rows are recorded at flush time on the synchronous
session and handed to subscribers by ``JobStore`` once the surrounding
transaction has committed or rolled back.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from sqlalchemy import event
from sqlalchemy.orm import Session

from jobwire.db.models import Job

PENDING_CHANGES_KEY = "jobwire.pending_changes"
INTERNAL_JOBS_KEY = "jobwire.internal_jobs"


class ChangeKind(StrEnum):
    """How a committed transaction touched a job row."""

    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"
    ROLLBACK = "rollback"


@dataclass(frozen=True)
class CommitEvent:
    """
    A job row change delivered to commit hooks.

    ``internal`` marks mutations made by the reservation machinery itself,
    which must not produce notifications.
    """

    job: Job
    kind: ChangeKind
    internal: bool = False


CommitHook = Callable[[CommitEvent], Awaitable[None]]


class JobSession(Session):
    """Synchronous session class that records job changes for commit hooks."""


def mark_internal(session: Any, job: Job) -> None:
    """
    Flag the next flushed change of ``job`` as internal.

    Accepts either the async session or its synchronous counterpart.
    """
    sync_session = getattr(session, "sync_session", session)
    sync_session.info.setdefault(INTERNAL_JOBS_KEY, set()).add(id(job))


def drain_changes(session: Any, rolled_back: bool = False) -> list[CommitEvent]:
    """
    Collect and clear the changes recorded on a session.

    A row touched by several flushes is reported once, with the first kind
    seen (a create followed by updates is a create).

    Args:
        session: The async or sync session.
        rolled_back: Report every change as a rollback.

    Returns:
        The commit events in flush order.
    """
    sync_session = getattr(session, "sync_session", session)
    pending = sync_session.info.pop(PENDING_CHANGES_KEY, [])
    sync_session.info.pop(INTERNAL_JOBS_KEY, None)

    seen: dict[int, CommitEvent] = {}
    for change in pending:
        key = id(change.job)
        if key in seen:
            if change.kind == ChangeKind.DESTROY:
                seen[key] = change
            continue
        seen[key] = change

    if rolled_back:
        return [
            CommitEvent(job=change.job, kind=ChangeKind.ROLLBACK, internal=change.internal)
            for change in seen.values()
        ]
    return list(seen.values())


@event.listens_for(JobSession, "after_flush")
def _record_job_changes(session: Session, flush_context: Any) -> None:
    pending = session.info.setdefault(PENDING_CHANGES_KEY, [])
    internal = session.info.get(INTERNAL_JOBS_KEY, set())

    for obj in session.new:
        if isinstance(obj, Job):
            pending.append(CommitEvent(obj, ChangeKind.CREATE, id(obj) in internal))

    for obj in session.dirty:
        if isinstance(obj, Job) and session.is_modified(obj, include_collections=False):
            pending.append(CommitEvent(obj, ChangeKind.UPDATE, id(obj) in internal))

    for obj in session.deleted:
        if isinstance(obj, Job):
            pending.append(CommitEvent(obj, ChangeKind.DESTROY, id(obj) in internal))
