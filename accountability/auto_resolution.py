# accountability/auto_resolution.py
"""
Closing remediation issues when the real artifact shows up.

Artifact-producing code publishes an ArtifactEvent instead of knowing about
remediation bookkeeping; the accountability engine subscribes and flips the
matching open issue to done.
"""
import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Callable, List

from sqlalchemy.orm import Session

from accountability.document_props import AccountabilityType, IssueState
from accountability.entities import utcnow
from accountability.materializer import open_remediation_issues

logger = logging.getLogger("accountability_backend")


class ArtifactEvent(str, Enum):
    STANDUP_POSTED = "standup_posted"
    REVIEW_SUBMITTED = "review_submitted"
    SPRINT_HYPOTHESIS_WRITTEN = "sprint_hypothesis_written"
    SPRINT_STARTED = "sprint_started"
    SPRINT_ISSUE_ADDED = "sprint_issue_added"
    PROJECT_HYPOTHESIS_WRITTEN = "project_hypothesis_written"
    PROJECT_RETRO_WRITTEN = "project_retro_written"

    @classmethod
    def parse(cls, value) -> "ArtifactEvent":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            raise ValueError(f"Unknown artifact event: {value!r}") from None

    @property
    def resolves(self) -> AccountabilityType:
        return EVENT_RESOLVES[self]


EVENT_RESOLVES = {
    ArtifactEvent.STANDUP_POSTED: AccountabilityType.STANDUP,
    ArtifactEvent.REVIEW_SUBMITTED: AccountabilityType.SPRINT_REVIEW,
    ArtifactEvent.SPRINT_HYPOTHESIS_WRITTEN: AccountabilityType.SPRINT_HYPOTHESIS,
    ArtifactEvent.SPRINT_STARTED: AccountabilityType.SPRINT_START,
    ArtifactEvent.SPRINT_ISSUE_ADDED: AccountabilityType.SPRINT_ISSUES,
    ArtifactEvent.PROJECT_HYPOTHESIS_WRITTEN: AccountabilityType.PROJECT_HYPOTHESIS,
    ArtifactEvent.PROJECT_RETRO_WRITTEN: AccountabilityType.PROJECT_RETRO,
}

# (target_id, accountability_type, workspace_id)
ArtifactSubscriber = Callable[[str, AccountabilityType, str], object]


class ArtifactEventBus:
    """
    Synchronous in-process fan-out. Subscribers run in registration order on
    the publisher's thread; their errors reach the publisher.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: List[ArtifactSubscriber] = []

    def subscribe(self, fn: ArtifactSubscriber) -> None:
        with self._lock:
            if fn not in self._subscribers:
                self._subscribers.append(fn)

    def unsubscribe(self, fn: ArtifactSubscriber) -> None:
        with self._lock:
            if fn in self._subscribers:
                self._subscribers.remove(fn)

    def publish(self, event, target_id: str, workspace_id: str) -> None:
        event = ArtifactEvent.parse(event)
        with self._lock:
            subscribers = list(self._subscribers)
        logger.debug("Artifact event %s target=%s workspace=%s -> %d subscriber(s)",
                     event.value, target_id, workspace_id, len(subscribers))
        for fn in subscribers:
            fn(str(target_id), event.resolves, str(workspace_id))


# Global, process-local default bus
ARTIFACT_EVENTS = ArtifactEventBus()


def auto_complete_accountability_issue(
    session_factory: Callable[[], Session],
    target_id: str,
    accountability_type,
    workspace_id: str,
    clock: Callable[[], datetime] = utcnow,
) -> int:
    """
    Mark the open remediation issue for (workspace, target, type) as done.
    Returns how many issues were closed; 0 means there was nothing open.
    """
    accountability_type = AccountabilityType.parse(accountability_type)

    session = session_factory()
    try:
        rows = open_remediation_issues(
            session, workspace_id, target_id, accountability_type, for_update=True
        )
        if not rows:
            session.commit()
            return 0

        now = clock()
        for doc in rows:
            # reassign so the JSON column is flagged dirty
            doc.properties = {
                **(doc.properties or {}),
                "state": IssueState.DONE.value,
                "completed_at": now.isoformat(),
            }
            doc.completed_at = now
            doc.updated_at = now
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    logger.info(
        "Auto-completed %d remediation issue(s) type=%s target=%s workspace=%s",
        len(rows), accountability_type.value, target_id, workspace_id,
    )
    return len(rows)
