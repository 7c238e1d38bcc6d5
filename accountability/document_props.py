# accountability/document_props.py
"""
Typed views over the `documents.properties` bag.

The store keeps a flexible JSON schema; the engine only ever reads these
validated models. Unknown keys are preserved (extra="allow") so the CRUD
layer can keep writing whatever else it needs.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator


class AccountabilityType(str, Enum):
    STANDUP = "standup"
    SPRINT_HYPOTHESIS = "sprint_hypothesis"
    SPRINT_START = "sprint_start"
    SPRINT_ISSUES = "sprint_issues"
    SPRINT_REVIEW = "sprint_review"
    PROJECT_HYPOTHESIS = "project_hypothesis"
    PROJECT_RETRO = "project_retro"

    @classmethod
    def parse(cls, value) -> "AccountabilityType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            raise ValueError(f"Unknown accountability type: {value!r}") from None


class IssueState(str, Enum):
    TRIAGE = "triage"
    BACKLOG = "backlog"
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    DONE = "done"
    CANCELLED = "cancelled"


TERMINAL_ISSUE_STATES = (IssueState.DONE.value, IssueState.CANCELLED.value)


class SprintStatus(str, Enum):
    PLANNING = "planning"
    ACTIVE = "active"
    COMPLETED = "completed"


class DocumentType(str, Enum):
    SPRINT = "sprint"
    PROJECT = "project"
    ISSUE = "issue"
    STANDUP = "standup"
    SPRINT_REVIEW = "sprint_review"
    PROJECT_RETRO = "project_retro"


# the issue validator accepts internal | external | action_items
ISSUE_SOURCE_ACCOUNTABILITY = "action_items"


def is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


class _Props(BaseModel):
    model_config = ConfigDict(extra="allow")


class SprintProps(_Props):
    sprint_number: int = 1
    owner_id: Optional[str] = None
    status: str = SprintStatus.PLANNING.value
    hypothesis: Optional[str] = None

    @field_validator("sprint_number", mode="before")
    @classmethod
    def _default_sprint_number(cls, v):
        # a missing/zero number is read as sprint 1
        return v or 1

    @field_validator("status", mode="before")
    @classmethod
    def _default_status(cls, v):
        return v or SprintStatus.PLANNING.value

    @property
    def is_started(self) -> bool:
        return self.status in (SprintStatus.ACTIVE.value, SprintStatus.COMPLETED.value)


class ProjectProps(_Props):
    owner_id: Optional[str] = None
    hypothesis: Optional[str] = None
    # None until a retro records the outcome; any value (True or False) is terminal
    hypothesis_validated: Optional[bool] = None


class IssueProps(_Props):
    state: str = IssueState.BACKLOG.value
    priority: Optional[str] = None
    assignee_id: Optional[str] = None
    source: Optional[str] = None
    due_date: Optional[str] = None
    is_system_generated: bool = False
    rejection_reason: Optional[str] = None
    accountability_target_id: Optional[str] = None
    accountability_type: Optional[AccountabilityType] = None
    completed_at: Optional[str] = None

    @field_validator("state", mode="before")
    @classmethod
    def _default_state(cls, v):
        return v or IssueState.BACKLOG.value

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_ISSUE_STATES


class StandupProps(_Props):
    author_id: Optional[str] = None
    content: str = ""
