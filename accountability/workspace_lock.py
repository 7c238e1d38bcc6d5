# accountability/workspace_lock.py
"""
Workspace-scoped serialization for ticket-number allocation.

Ticket numbers are derived as MAX(ticket_number)+1 per workspace, so two
concurrent creates in the same workspace must not read the same max. Both
strategies below serialize writers of ONE workspace and leave every other
workspace unblocked:

- AdvisoryWorkspaceLock: pg_advisory_xact_lock, released by the enclosing
  transaction's COMMIT/ROLLBACK.
- ProcessWorkspaceLock: a threading.Lock per workspace, for dialects with no
  advisory locks (SQLite in local mode and tests). Only serializes callers
  inside one process.
"""
import hashlib
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator

from sqlalchemy import func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from accountability.document_props import DocumentType
from accountability.entities import Document

logger = logging.getLogger("accountability_backend")


def workspace_lock_key(workspace_id: str) -> int:
    """Stable signed 64-bit key for pg_advisory_xact_lock(bigint)."""
    digest = hashlib.blake2b(str(workspace_id).encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class WorkspaceLock:
    name = "base"

    @contextmanager
    def hold(self, session: Session, workspace_id: str) -> Iterator[None]:
        raise NotImplementedError


class AdvisoryWorkspaceLock(WorkspaceLock):
    name = "pg_advisory_xact_lock"

    @contextmanager
    def hold(self, session: Session, workspace_id: str) -> Iterator[None]:
        # transaction-bound: no explicit unlock, the caller's commit/rollback releases it
        session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": workspace_lock_key(workspace_id)})
        yield


class ProcessWorkspaceLock(WorkspaceLock):
    name = "process_local"

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, workspace_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(workspace_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[workspace_id] = lock
            return lock

    @contextmanager
    def hold(self, session: Session, workspace_id: str) -> Iterator[None]:
        lock = self._lock_for(str(workspace_id))
        with lock:
            yield


# one registry per process so every materializer shares the same per-workspace locks
PROCESS_WORKSPACE_LOCK = ProcessWorkspaceLock()


def select_workspace_lock(engine: Engine) -> WorkspaceLock:
    if engine.dialect.name == "postgresql":
        lock: WorkspaceLock = AdvisoryWorkspaceLock()
    else:
        lock = PROCESS_WORKSPACE_LOCK
    logger.debug("Workspace lock strategy for dialect=%s: %s", engine.dialect.name, lock.name)
    return lock


def next_ticket_number(session: Session, workspace_id: str) -> int:
    """
    Next unused ticket number in the workspace.
    Only meaningful while the workspace lock is held, inside the same
    transaction as the insert that consumes it.
    """
    stmt = (
        select(func.coalesce(func.max(Document.ticket_number), 0) + 1)
        .where(Document.workspace_id == str(workspace_id))
        .where(Document.document_type == DocumentType.ISSUE.value)
    )
    return int(session.execute(stmt).scalar_one())
