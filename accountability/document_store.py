# accountability/document_store.py
"""
Typed adapter over the generic `documents` store.

Reads return validated records (SprintRecord / ProjectRecord) so the rule
evaluators never touch raw property bags. Writes cover the artifact-producing
operations of the surrounding CRUD layer; each one publishes its
ArtifactEvent after its own transaction has committed.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, List, Optional
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session, aliased

from accountability.auto_resolution import ARTIFACT_EVENTS, ArtifactEvent, ArtifactEventBus
from accountability.calendar_utils import day_bounds
from accountability.document_props import (
    DocumentType,
    IssueProps,
    IssueState,
    ProjectProps,
    SprintProps,
    SprintStatus,
    StandupProps,
    is_blank,
)
from accountability.entities import Document, DocumentAssociation, Workspace, utcnow
from accountability.workspace_lock import WorkspaceLock, next_ticket_number, select_workspace_lock

logger = logging.getLogger("accountability_backend")

SPRINT_RELATIONSHIP = "sprint"
PROJECT_RELATIONSHIP = "project"


@dataclass(frozen=True)
class SprintRecord:
    id: str
    title: str
    props: SprintProps

    @property
    def display_title(self) -> str:
        return self.title or f"Sprint {self.props.sprint_number}"


@dataclass(frozen=True)
class ProjectRecord:
    id: str
    title: str
    props: ProjectProps

    @property
    def display_title(self) -> str:
        return self.title or "Untitled Project"


def _live(query, model=Document):
    return query.filter(model.deleted_at.is_(None)).filter(model.archived_at.is_(None))


class DocumentStore:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Callable[[], datetime] = utcnow,
        events: Optional[ArtifactEventBus] = None,
        workspace_lock: Optional[WorkspaceLock] = None,
    ):
        self.SessionFactory = session_factory
        self._clock = clock
        self.events = events if events is not None else ARTIFACT_EVENTS
        self._workspace_lock = workspace_lock

    # -----------------------
    # Reads
    # -----------------------

    def get_workspace_start_date(self, workspace_id: str) -> Optional[date]:
        session = self.SessionFactory()
        try:
            workspace = (
                session.query(Workspace)
                .filter(Workspace.id == str(workspace_id))
                .one_or_none()
            )
            return workspace.sprint_start_date if workspace else None
        finally:
            session.close()

    def sprints_with_assigned_issues(self, workspace_id: str, user_id: str, sprint_number: int) -> List[SprintRecord]:
        """
        Sprints numbered `sprint_number` that hold at least one live issue
        assigned to the user. Driven from the user's issues, so a sprint the
        user has nothing assigned in is never returned. The number is matched
        on the stored property: a sprint without one never matches.
        """
        issue = aliased(Document)
        sprint_ids = (
            select(DocumentAssociation.related_id)
            .join(issue, issue.id == DocumentAssociation.document_id)
            .where(DocumentAssociation.relationship_type == SPRINT_RELATIONSHIP)
            .where(issue.workspace_id == str(workspace_id))
            .where(issue.document_type == DocumentType.ISSUE.value)
            .where(issue.deleted_at.is_(None))
            .where(issue.properties["assignee_id"].as_string() == str(user_id))
        )

        session = self.SessionFactory()
        try:
            rows = _live(
                session.query(Document)
                .filter(Document.workspace_id == str(workspace_id))
                .filter(Document.document_type == DocumentType.SPRINT.value)
                .filter(Document.id.in_(sprint_ids))
                .filter(Document.properties["sprint_number"].as_integer() == int(sprint_number))
            ).order_by(Document.created_at.asc()).all()
            return [self._sprint_record(d) for d in rows]
        finally:
            session.close()

    def owned_sprints(self, workspace_id: str, user_id: str) -> List[SprintRecord]:
        session = self.SessionFactory()
        try:
            rows = _live(
                session.query(Document)
                .filter(Document.workspace_id == str(workspace_id))
                .filter(Document.document_type == DocumentType.SPRINT.value)
                .filter(Document.properties["owner_id"].as_string() == str(user_id))
            ).order_by(Document.created_at.asc()).all()
            return [self._sprint_record(d) for d in rows]
        finally:
            session.close()

    def has_standup_on(self, workspace_id: str, user_id: str, sprint_id: str, day: date) -> bool:
        start, end = day_bounds(day)
        session = self.SessionFactory()
        try:
            found = (
                session.query(Document.id)
                .filter(Document.workspace_id == str(workspace_id))
                .filter(Document.document_type == DocumentType.STANDUP.value)
                .filter(Document.properties["author_id"].as_string() == str(user_id))
                .filter(Document.parent_id == str(sprint_id))
                .filter(Document.created_at >= start)
                .filter(Document.created_at < end)
                .first()
            )
            return found is not None
        finally:
            session.close()

    def has_sprint_review(self, workspace_id: str, sprint_id: str) -> bool:
        session = self.SessionFactory()
        try:
            found = (
                session.query(Document.id)
                .join(DocumentAssociation, DocumentAssociation.document_id == Document.id)
                .filter(DocumentAssociation.related_id == str(sprint_id))
                .filter(DocumentAssociation.relationship_type == SPRINT_RELATIONSHIP)
                .filter(Document.workspace_id == str(workspace_id))
                .filter(Document.document_type == DocumentType.SPRINT_REVIEW.value)
                .filter(Document.deleted_at.is_(None))
                .first()
            )
            return found is not None
        finally:
            session.close()

    def count_sprint_issues(self, sprint_id: str) -> int:
        session = self.SessionFactory()
        try:
            return int(
                session.query(func.count(Document.id))
                .select_from(Document)
                .join(DocumentAssociation, DocumentAssociation.document_id == Document.id)
                .filter(DocumentAssociation.related_id == str(sprint_id))
                .filter(DocumentAssociation.relationship_type == SPRINT_RELATIONSHIP)
                .filter(Document.document_type == DocumentType.ISSUE.value)
                .filter(Document.deleted_at.is_(None))
                .scalar()
                or 0
            )
        finally:
            session.close()

    def owned_projects(self, workspace_id: str, user_id: str) -> List[ProjectRecord]:
        session = self.SessionFactory()
        try:
            rows = _live(
                session.query(Document)
                .filter(Document.workspace_id == str(workspace_id))
                .filter(Document.document_type == DocumentType.PROJECT.value)
                .filter(Document.properties["owner_id"].as_string() == str(user_id))
            ).order_by(Document.created_at.asc()).all()
            return [
                ProjectRecord(id=d.id, title=d.title or "", props=ProjectProps.model_validate(d.properties or {}))
                for d in rows
            ]
        finally:
            session.close()

    def project_issue_states(self, project_id: str) -> List[str]:
        """States of every live issue associated with the project."""
        session = self.SessionFactory()
        try:
            rows = (
                session.query(Document.properties)
                .select_from(Document)
                .join(DocumentAssociation, DocumentAssociation.document_id == Document.id)
                .filter(DocumentAssociation.related_id == str(project_id))
                .filter(DocumentAssociation.relationship_type == PROJECT_RELATIONSHIP)
                .filter(Document.document_type == DocumentType.ISSUE.value)
                .filter(Document.deleted_at.is_(None))
                .all()
            )
            return [IssueProps.model_validate(props or {}).state for (props,) in rows]
        finally:
            session.close()

    def get_issue_props(self, issue_id: str) -> IssueProps:
        session = self.SessionFactory()
        try:
            doc = self._get(session, issue_id, DocumentType.ISSUE)
            return IssueProps.model_validate(doc.properties or {})
        finally:
            session.close()

    # -----------------------
    # Writes
    # -----------------------

    def create_workspace(self, sprint_start_date: date, name: str = "", workspace_id: Optional[str] = None) -> str:
        workspace_id = workspace_id or str(uuid4())
        session = self.SessionFactory()
        try:
            session.add(Workspace(
                id=workspace_id,
                name=name,
                sprint_start_date=sprint_start_date,
                created_at=self._clock(),
            ))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        return workspace_id

    def create_sprint(
        self,
        workspace_id: str,
        owner_id: str,
        sprint_number: int,
        title: Optional[str] = None,
        status: str = SprintStatus.PLANNING.value,
        hypothesis: Optional[str] = None,
    ) -> str:
        properties = {
            "sprint_number": sprint_number,
            "owner_id": str(owner_id),
            "status": status,
            "hypothesis": hypothesis,
        }
        return self._insert(workspace_id, DocumentType.SPRINT, title if title is not None else "", properties,
                            created_by=owner_id)

    def create_project(
        self,
        workspace_id: str,
        owner_id: str,
        title: str = "",
        hypothesis: Optional[str] = None,
    ) -> str:
        properties = {
            "owner_id": str(owner_id),
            "hypothesis": hypothesis,
            "hypothesis_validated": None,
        }
        return self._insert(workspace_id, DocumentType.PROJECT, title, properties, created_by=owner_id)

    def create_issue(
        self,
        workspace_id: str,
        title: str,
        assignee_id: Optional[str] = None,
        state: str = IssueState.BACKLOG.value,
        sprint_id: Optional[str] = None,
        project_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> str:
        properties = {
            "state": state,
            "priority": "medium",
            "assignee_id": str(assignee_id) if assignee_id else None,
            "source": "internal",
        }
        issue_id = str(uuid4())
        session = self.SessionFactory()
        try:
            with self._lock_for(session).hold(session, workspace_id):
                now = self._clock()
                session.add(Document(
                    id=issue_id,
                    workspace_id=str(workspace_id),
                    document_type=DocumentType.ISSUE.value,
                    title=title,
                    properties=properties,
                    ticket_number=next_ticket_number(session, workspace_id),
                    created_by=str(created_by) if created_by else None,
                    created_at=now,
                    updated_at=now,
                ))
                session.flush()
                if sprint_id:
                    session.add(self._association(issue_id, sprint_id, SPRINT_RELATIONSHIP))
                if project_id:
                    session.add(self._association(issue_id, project_id, PROJECT_RELATIONSHIP))
                session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if sprint_id:
            self.events.publish(ArtifactEvent.SPRINT_ISSUE_ADDED, sprint_id, workspace_id)
        return issue_id

    def add_issue_to_sprint(self, issue_id: str, sprint_id: str) -> None:
        session = self.SessionFactory()
        try:
            sprint = self._get(session, sprint_id, DocumentType.SPRINT)
            workspace_id = sprint.workspace_id
            session.add(self._association(issue_id, sprint_id, SPRINT_RELATIONSHIP))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        self.events.publish(ArtifactEvent.SPRINT_ISSUE_ADDED, sprint_id, workspace_id)

    def soft_delete(self, document_id: str) -> None:
        self._stamp(document_id, "deleted_at")

    def archive(self, document_id: str) -> None:
        self._stamp(document_id, "archived_at")

    def post_standup(self, workspace_id: str, author_id: str, sprint_id: str, content: str = "") -> str:
        standup_id = self._insert(
            workspace_id,
            DocumentType.STANDUP,
            "Standup",
            StandupProps(author_id=str(author_id), content=content).model_dump(),
            created_by=author_id,
            parent_id=sprint_id,
        )
        self.events.publish(ArtifactEvent.STANDUP_POSTED, sprint_id, workspace_id)
        return standup_id

    def submit_sprint_review(self, workspace_id: str, sprint_id: str, author_id: str, content: str = "") -> str:
        review_id = self._insert(
            workspace_id,
            DocumentType.SPRINT_REVIEW,
            "Sprint Review",
            {"author_id": str(author_id), "content": content},
            created_by=author_id,
            parent_id=sprint_id,
            related=(sprint_id, SPRINT_RELATIONSHIP),
        )
        self.events.publish(ArtifactEvent.REVIEW_SUBMITTED, sprint_id, workspace_id)
        return review_id

    def set_sprint_hypothesis(self, sprint_id: str, hypothesis: Optional[str]) -> None:
        workspace_id = self._update_props(sprint_id, DocumentType.SPRINT, hypothesis=hypothesis)
        if not is_blank(hypothesis):
            self.events.publish(ArtifactEvent.SPRINT_HYPOTHESIS_WRITTEN, sprint_id, workspace_id)

    def start_sprint(self, sprint_id: str) -> None:
        workspace_id = self._update_props(sprint_id, DocumentType.SPRINT, status=SprintStatus.ACTIVE.value)
        self.events.publish(ArtifactEvent.SPRINT_STARTED, sprint_id, workspace_id)

    def set_project_hypothesis(self, project_id: str, hypothesis: Optional[str]) -> None:
        workspace_id = self._update_props(project_id, DocumentType.PROJECT, hypothesis=hypothesis)
        if not is_blank(hypothesis):
            self.events.publish(ArtifactEvent.PROJECT_HYPOTHESIS_WRITTEN, project_id, workspace_id)

    def write_project_retro(
        self,
        workspace_id: str,
        project_id: str,
        author_id: str,
        hypothesis_validated: bool,
        content: str = "",
    ) -> str:
        """
        Record the retro and the hypothesis outcome. Once hypothesis_validated
        is set the project is permanently out of retro tracking.
        """
        session = self.SessionFactory()
        try:
            project = self._get(session, project_id, DocumentType.PROJECT)
            project.properties = {**(project.properties or {}), "hypothesis_validated": bool(hypothesis_validated)}
            project.updated_at = self._clock()

            retro_id = str(uuid4())
            now = self._clock()
            session.add(Document(
                id=retro_id,
                workspace_id=str(workspace_id),
                document_type=DocumentType.PROJECT_RETRO.value,
                title="Project Retro",
                properties={"author_id": str(author_id), "content": content},
                parent_id=str(project_id),
                created_by=str(author_id),
                created_at=now,
                updated_at=now,
            ))
            session.flush()
            session.add(self._association(retro_id, project_id, PROJECT_RELATIONSHIP))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        self.events.publish(ArtifactEvent.PROJECT_RETRO_WRITTEN, project_id, workspace_id)
        return retro_id

    # -----------------------
    # Internals
    # -----------------------

    def _lock_for(self, session: Session) -> WorkspaceLock:
        if self._workspace_lock is None:
            self._workspace_lock = select_workspace_lock(session.get_bind())
        return self._workspace_lock

    def _sprint_record(self, doc: Document) -> SprintRecord:
        return SprintRecord(id=doc.id, title=doc.title or "", props=SprintProps.model_validate(doc.properties or {}))

    def _association(self, document_id: str, related_id: str, relationship_type: str) -> DocumentAssociation:
        return DocumentAssociation(
            id=str(uuid4()),
            document_id=str(document_id),
            related_id=str(related_id),
            relationship_type=relationship_type,
        )

    def _get(self, session: Session, document_id: str, document_type: DocumentType) -> Document:
        doc = (
            session.query(Document)
            .filter(Document.id == str(document_id))
            .filter(Document.document_type == document_type.value)
            .one_or_none()
        )
        if doc is None:
            raise ValueError(f"{document_type.value} not found: {document_id}")
        return doc

    def _insert(
        self,
        workspace_id: str,
        document_type: DocumentType,
        title: str,
        properties: dict,
        created_by: Optional[str] = None,
        parent_id: Optional[str] = None,
        related: Optional[tuple] = None,
    ) -> str:
        document_id = str(uuid4())
        session = self.SessionFactory()
        try:
            now = self._clock()
            session.add(Document(
                id=document_id,
                workspace_id=str(workspace_id),
                document_type=document_type.value,
                title=title,
                properties=properties,
                parent_id=str(parent_id) if parent_id else None,
                created_by=str(created_by) if created_by else None,
                created_at=now,
                updated_at=now,
            ))
            session.flush()
            if related:
                session.add(self._association(document_id, related[0], related[1]))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        return document_id

    def _update_props(self, document_id: str, document_type: DocumentType, **changes) -> str:
        """Merge `changes` into the property bag; returns the owning workspace id."""
        session = self.SessionFactory()
        try:
            doc = self._get(session, document_id, document_type)
            doc.properties = {**(doc.properties or {}), **changes}
            doc.updated_at = self._clock()
            workspace_id = doc.workspace_id
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        return workspace_id

    def _stamp(self, document_id: str, column: str) -> None:
        session = self.SessionFactory()
        try:
            doc = session.query(Document).filter(Document.id == str(document_id)).one_or_none()
            if doc is None:
                raise ValueError(f"Document not found: {document_id}")
            setattr(doc, column, self._clock())
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
