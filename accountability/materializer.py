# accountability/materializer.py
"""
Find-or-create of remediation issues.

At most one open remediation issue may exist per (workspace, target, type).
The unlocked lookup is only a fast path: the create branch repeats it inside
the workspace-locked transaction, so concurrent callers racing on the same
key see the winner's row instead of inserting a second one.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from accountability.document_props import (
    AccountabilityType,
    DocumentType,
    ISSUE_SOURCE_ACCOUNTABILITY,
    IssueState,
    TERMINAL_ISSUE_STATES,
)
from accountability.entities import Document, utcnow
from accountability.workspace_lock import WorkspaceLock, next_ticket_number, select_workspace_lock

logger = logging.getLogger("accountability_backend")


class AccountabilityInvariantError(RuntimeError):
    """More than one open remediation issue exists for one (workspace, target, type)."""


@dataclass(frozen=True)
class AccountabilityIssue:
    id: str
    title: str
    ticket_number: int
    type: AccountabilityType
    target_id: str
    due_date: Optional[date]


@dataclass(frozen=True)
class MaterializeResult:
    issue: AccountabilityIssue
    was_created: bool


def open_remediation_issues(
    session: Session,
    workspace_id: str,
    target_id: str,
    accountability_type: AccountabilityType,
    for_update: bool = False,
) -> List[Document]:
    query = (
        session.query(Document)
        .filter(Document.workspace_id == str(workspace_id))
        .filter(Document.document_type == DocumentType.ISSUE.value)
        .filter(Document.properties["accountability_target_id"].as_string() == str(target_id))
        .filter(Document.properties["accountability_type"].as_string() == accountability_type.value)
        .filter(Document.properties["state"].as_string().notin_(TERMINAL_ISSUE_STATES))
        .filter(Document.deleted_at.is_(None))
        .order_by(Document.created_at.asc())
    )
    if for_update:
        query = query.with_for_update()
    return query.all()


def _single_open(rows: List[Document], workspace_id: str, target_id: str, accountability_type: AccountabilityType):
    if len(rows) > 1:
        raise AccountabilityInvariantError(
            f"{len(rows)} open remediation issues for workspace={workspace_id} "
            f"target={target_id} type={accountability_type.value}: {[r.id for r in rows]}"
        )
    return rows[0] if rows else None


def _to_issue(doc: Document, accountability_type: AccountabilityType, target_id: str,
              due_date: Optional[date]) -> AccountabilityIssue:
    return AccountabilityIssue(
        id=doc.id,
        title=doc.title,
        ticket_number=doc.ticket_number,
        type=accountability_type,
        target_id=str(target_id),
        due_date=due_date,
    )


class RemediationMaterializer:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        workspace_lock: Optional[WorkspaceLock] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.SessionFactory = session_factory
        self._workspace_lock = workspace_lock
        self._clock = clock

    def _lock_for(self, session: Session) -> WorkspaceLock:
        if self._workspace_lock is None:
            self._workspace_lock = select_workspace_lock(session.get_bind())
        return self._workspace_lock

    def materialize(
        self,
        accountability_type: AccountabilityType,
        target_id: str,
        user_id: str,
        workspace_id: str,
        title: str,
        due_date: Optional[date],
    ) -> MaterializeResult:
        accountability_type = AccountabilityType.parse(accountability_type)

        # fast path, no lock
        session = self.SessionFactory()
        try:
            existing = _single_open(
                open_remediation_issues(session, workspace_id, target_id, accountability_type),
                workspace_id, target_id, accountability_type,
            )
            if existing is not None:
                logger.debug(
                    "Remediation issue already open: #%s type=%s target=%s",
                    existing.ticket_number, accountability_type.value, target_id,
                )
                return MaterializeResult(_to_issue(existing, accountability_type, target_id, due_date), False)
        finally:
            session.close()

        return self._create(accountability_type, target_id, user_id, workspace_id, title, due_date)

    def _create(
        self,
        accountability_type: AccountabilityType,
        target_id: str,
        user_id: str,
        workspace_id: str,
        title: str,
        due_date: Optional[date],
    ) -> MaterializeResult:
        session = self.SessionFactory()
        try:
            with self._lock_for(session).hold(session, workspace_id):
                # someone may have created it between the fast path and the lock
                existing = _single_open(
                    open_remediation_issues(session, workspace_id, target_id, accountability_type),
                    workspace_id, target_id, accountability_type,
                )
                if existing is not None:
                    result = MaterializeResult(_to_issue(existing, accountability_type, target_id, due_date), False)
                    session.commit()
                    return result

                ticket_number = next_ticket_number(session, workspace_id)

                properties = {
                    "state": IssueState.TODO.value,
                    "priority": "high",
                    "source": ISSUE_SOURCE_ACCOUNTABILITY,
                    "assignee_id": str(user_id),
                    "rejection_reason": None,
                    "due_date": due_date.isoformat() if due_date else None,
                    "is_system_generated": True,
                    "accountability_target_id": str(target_id),
                    "accountability_type": accountability_type.value,
                }
                now = self._clock()
                issue_id = str(uuid4())
                doc = Document(
                    id=issue_id,
                    workspace_id=str(workspace_id),
                    document_type=DocumentType.ISSUE.value,
                    title=title,
                    properties=properties,
                    ticket_number=ticket_number,
                    created_by=str(user_id),
                    created_at=now,
                    updated_at=now,
                )
                session.add(doc)
                session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(
            "Created remediation issue #%s type=%s target=%s workspace=%s",
            ticket_number, accountability_type.value, target_id, workspace_id,
        )
        return MaterializeResult(
            AccountabilityIssue(
                id=issue_id,
                title=title,
                ticket_number=ticket_number,
                type=accountability_type,
                target_id=str(target_id),
                due_date=due_date,
            ),
            True,
        )
