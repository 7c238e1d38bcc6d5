# accountability/accountability_service.py
"""
Accountability Check Service

Detects missing accountability items for a user:
1. Missing standups for the current sprint (business days only)
2. Started sprints without hypothesis
3. Started sprints not moved to active/completed
4. Started sprints with no issues
5. Ended sprints without review (>1 business day after end)
6. Owned projects without hypothesis
7. Finished projects without retro

and materializes one remediation issue per finding.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from accountability.auto_resolution import ARTIFACT_EVENTS, ArtifactEventBus, auto_complete_accountability_issue
from accountability.calendar_utils import utc_today
from accountability.document_store import DocumentStore
from accountability.entities import utcnow
from accountability.evaluators import EVALUATORS, Evaluator, MissingItem, build_context
from accountability.materializer import AccountabilityIssue, RemediationMaterializer
from accountability.utils import Utils
from accountability.workspace_lock import WorkspaceLock

logger = logging.getLogger("accountability_backend")

NO_DUE_DATE_DAYS_OVERDUE = -999


@dataclass
class AccountabilityReport:
    missing_items: List[MissingItem] = field(default_factory=list)
    created_issues: List[AccountabilityIssue] = field(default_factory=list)
    existing_issues: List[AccountabilityIssue] = field(default_factory=list)


class AccountabilityService(Utils):
    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Callable[[], datetime] = utcnow,
        events: Optional[ArtifactEventBus] = None,
        workspace_lock: Optional[WorkspaceLock] = None,
        evaluators: Optional[List[Evaluator]] = None,
    ):
        self.SessionFactory = session_factory
        self._clock = clock
        self.events = events if events is not None else ARTIFACT_EVENTS
        self.store = DocumentStore(session_factory, clock=clock, events=self.events, workspace_lock=workspace_lock)
        self.materializer = RemediationMaterializer(session_factory, workspace_lock=workspace_lock, clock=clock)
        self.evaluators = list(evaluators) if evaluators is not None else list(EVALUATORS)

        # artifact producers push completion through the bus
        self.events.subscribe(self.auto_complete_accountability_issue)

    def close(self) -> None:
        self.events.unsubscribe(self.auto_complete_accountability_issue)

    # -----------------------
    # Public API
    # -----------------------

    def check_missing_accountability(self, user_id: str, workspace_id: str) -> List[MissingItem]:
        """Read-only: every missing item for the user, in rule order. Rule errors propagate."""
        ctx = build_context(self.store, user_id, workspace_id, utc_today(self._clock()))
        if ctx is None:
            logger.info(f"Workspace not found, nothing to check: {workspace_id}")
            return []

        items: List[MissingItem] = []
        for evaluator in self.evaluators:
            items.extend(evaluator(self.store, ctx))

        logger.debug(
            "Accountability check user=%s workspace=%s sprint=%s -> %d item(s)",
            user_id, workspace_id, ctx.current_sprint_number, len(items),
        )
        return items

    def check_and_create_accountability_issues(self, user_id: str, workspace_id: str) -> AccountabilityReport:
        report = AccountabilityReport(missing_items=self.check_missing_accountability(user_id, workspace_id))

        for item in report.missing_items:
            result = self.materializer.materialize(
                item.type,
                item.target_id,
                user_id,
                workspace_id,
                item.message,
                item.due_date,
            )
            if result.was_created:
                report.created_issues.append(result.issue)
            else:
                report.existing_issues.append(result.issue)

        if report.created_issues:
            logger.info(
                "Reconciled user=%s workspace=%s: %d created, %d already open",
                user_id, workspace_id, len(report.created_issues), len(report.existing_issues),
            )
        return report

    def auto_complete_accountability_issue(self, target_id: str, accountability_type, workspace_id: str) -> int:
        return auto_complete_accountability_issue(
            self.SessionFactory, target_id, accountability_type, workspace_id, clock=self._clock
        )

    def action_items(self, user_id: str, workspace_id: str) -> List[dict]:
        """
        Missing items shaped for an action-items list: dated items first,
        most overdue first; undated items keep rule order at the end.
        """
        today = utc_today(self._clock())
        items = []
        for item in self.check_missing_accountability(user_id, workspace_id):
            days_overdue = (today - item.due_date).days if item.due_date else NO_DUE_DATE_DAYS_OVERDUE
            items.append({
                "id": f"{item.type.value}-{item.target_id}",
                "title": item.message,
                "state": "todo",
                "priority": "high",
                "is_system_generated": True,
                "accountability_type": item.type.value,
                "accountability_target_id": item.target_id,
                "target_title": item.target_title,
                "target_type": item.target_type,
                "due_date": item.due_date.isoformat() if item.due_date else None,
                "days_overdue": days_overdue,
            })

        dated = [i for i in items if i["due_date"]]
        undated = [i for i in items if not i["due_date"]]
        dated.sort(key=lambda i: i["days_overdue"], reverse=True)
        return dated + undated
