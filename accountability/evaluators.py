# accountability/evaluators.py
"""
The seven accountability rules.

Each rule is a read-only function (store, context) -> [MissingItem]. Rules
know nothing about each other; the orchestrator concatenates their output
in EVALUATORS order.
"""
from dataclasses import dataclass
from datetime import date
from typing import Callable, List, Optional, Tuple

from accountability.calendar_utils import (
    SPRINT_DURATION_DAYS,
    add_business_days,
    current_sprint_number,
    is_business_day,
    sprint_window,
)
from accountability.document_props import TERMINAL_ISSUE_STATES, AccountabilityType, is_blank
from accountability.document_store import DocumentStore, SprintRecord


@dataclass(frozen=True)
class MissingItem:
    type: AccountabilityType
    target_id: str
    target_title: str
    target_type: str  # "sprint" | "project"
    due_date: Optional[date]
    message: str


@dataclass(frozen=True)
class ReconciliationContext:
    user_id: str
    workspace_id: str
    today: date
    workspace_start: date
    sprint_length: int = SPRINT_DURATION_DAYS

    @property
    def current_sprint_number(self) -> int:
        return current_sprint_number(self.today, self.workspace_start, self.sprint_length)

    def window(self, sprint_number: int) -> Tuple[date, date]:
        return sprint_window(sprint_number, self.workspace_start, self.sprint_length)


def build_context(store: DocumentStore, user_id: str, workspace_id: str, today: date) -> Optional[ReconciliationContext]:
    """None when the workspace does not exist: nothing to check."""
    workspace_start = store.get_workspace_start_date(workspace_id)
    if workspace_start is None:
        return None
    return ReconciliationContext(
        user_id=str(user_id),
        workspace_id=str(workspace_id),
        today=today,
        workspace_start=workspace_start,
    )


def _sprint_item(kind: AccountabilityType, sprint: SprintRecord, due: Optional[date], message: str) -> MissingItem:
    return MissingItem(
        type=kind,
        target_id=sprint.id,
        target_title=sprint.display_title,
        target_type="sprint",
        due_date=due,
        message=message,
    )


def _started_owned_sprints(store: DocumentStore, ctx: ReconciliationContext) -> List[Tuple[SprintRecord, date]]:
    started = []
    for sprint in store.owned_sprints(ctx.workspace_id, ctx.user_id):
        start, _ = ctx.window(sprint.props.sprint_number)
        if start <= ctx.today:
            started.append((sprint, start))
    return started


def check_missing_standups(store: DocumentStore, ctx: ReconciliationContext) -> List[MissingItem]:
    if not is_business_day(ctx.today):
        return []

    sprint_number = ctx.current_sprint_number
    if sprint_number < 1:
        # before the workspace's first sprint
        return []

    items = []
    for sprint in store.sprints_with_assigned_issues(ctx.workspace_id, ctx.user_id, sprint_number):
        if store.has_standup_on(ctx.workspace_id, ctx.user_id, sprint.id, ctx.today):
            continue
        items.append(_sprint_item(
            AccountabilityType.STANDUP,
            sprint,
            ctx.today,
            f"Post standup for {sprint.title or 'current sprint'}",
        ))
    return items


def check_sprint_hypothesis(store: DocumentStore, ctx: ReconciliationContext) -> List[MissingItem]:
    return [
        _sprint_item(AccountabilityType.SPRINT_HYPOTHESIS, sprint, start,
                     f"Write hypothesis for {sprint.display_title}")
        for sprint, start in _started_owned_sprints(store, ctx)
        if is_blank(sprint.props.hypothesis)
    ]


def check_sprint_started(store: DocumentStore, ctx: ReconciliationContext) -> List[MissingItem]:
    # lifecycle status is advanced by hand, independent of the date window
    return [
        _sprint_item(AccountabilityType.SPRINT_START, sprint, start, f"Start {sprint.display_title}")
        for sprint, start in _started_owned_sprints(store, ctx)
        if not sprint.props.is_started
    ]


def check_sprint_issues(store: DocumentStore, ctx: ReconciliationContext) -> List[MissingItem]:
    return [
        _sprint_item(AccountabilityType.SPRINT_ISSUES, sprint, start, f"Add issues to {sprint.display_title}")
        for sprint, start in _started_owned_sprints(store, ctx)
        if store.count_sprint_issues(sprint.id) == 0
    ]


def check_missing_sprint_reviews(store: DocumentStore, ctx: ReconciliationContext) -> List[MissingItem]:
    """Ended sprints with no review, once the one-business-day grace period is over."""
    items = []
    for sprint in store.owned_sprints(ctx.workspace_id, ctx.user_id):
        _, end = ctx.window(sprint.props.sprint_number)
        if ctx.today <= end:
            continue
        review_due = add_business_days(end, 1)
        if ctx.today <= review_due:
            continue
        if store.has_sprint_review(ctx.workspace_id, sprint.id):
            continue
        items.append(_sprint_item(
            AccountabilityType.SPRINT_REVIEW,
            sprint,
            review_due,
            f"Complete review for {sprint.display_title}",
        ))
    return items


def check_project_hypothesis(store: DocumentStore, ctx: ReconciliationContext) -> List[MissingItem]:
    return [
        MissingItem(
            type=AccountabilityType.PROJECT_HYPOTHESIS,
            target_id=project.id,
            target_title=project.display_title,
            target_type="project",
            due_date=None,
            message=f"Write hypothesis for {project.title or 'project'}",
        )
        for project in store.owned_projects(ctx.workspace_id, ctx.user_id)
        if is_blank(project.props.hypothesis)
    ]


def check_project_retros(store: DocumentStore, ctx: ReconciliationContext) -> List[MissingItem]:
    """
    Projects whose live issues are all done/cancelled (and there is at least
    one) and whose hypothesis outcome was never recorded.
    """
    items = []
    for project in store.owned_projects(ctx.workspace_id, ctx.user_id):
        if project.props.hypothesis_validated is not None:
            continue
        states = store.project_issue_states(project.id)
        if not states or any(state not in TERMINAL_ISSUE_STATES for state in states):
            continue
        items.append(MissingItem(
            type=AccountabilityType.PROJECT_RETRO,
            target_id=project.id,
            target_title=project.display_title,
            target_type="project",
            due_date=None,
            message=f"Complete retro for {project.title or 'project'}",
        ))
    return items


Evaluator = Callable[[DocumentStore, ReconciliationContext], List[MissingItem]]

EVALUATORS: Tuple[Evaluator, ...] = (
    check_missing_standups,
    check_sprint_hypothesis,
    check_sprint_started,
    check_sprint_issues,
    check_missing_sprint_reviews,
    check_project_hypothesis,
    check_project_retros,
)
