"""Tests for the AccountabilityService orchestrator."""

from datetime import datetime

import pytest

from accountability.accountability_service import AccountabilityService
from accountability.document_props import AccountabilityType, DocumentType
from accountability.entities import Document
from accountability.evaluators import check_project_hypothesis

from tests.conftest import OTHER_USER_ID, USER_ID


@pytest.fixture
def busy_workspace(store, clock, workspace_id):
    """Wednesday of sprint 3 with one finding of every kind."""
    clock.set(datetime(2024, 1, 17, 9, 0))
    team_sprint = store.create_sprint(workspace_id, OTHER_USER_ID, 3, title="Team Sprint 3", status="active",
                                      hypothesis="h")
    store.create_issue(workspace_id, "Mine", assignee_id=USER_ID, sprint_id=team_sprint)
    my_sprint = store.create_sprint(workspace_id, USER_ID, 3, title="My Sprint 3")
    old_sprint = store.create_sprint(workspace_id, USER_ID, 2, title="My Sprint 2", status="completed",
                                     hypothesis="h")
    store.create_issue(workspace_id, "Old", state="done", sprint_id=old_sprint)
    bare = store.create_project(workspace_id, USER_ID, "No Hypothesis")
    finished = store.create_project(workspace_id, USER_ID, "Finished", hypothesis="h")
    store.create_issue(workspace_id, "Done", state="done", project_id=finished)
    return {
        "team_sprint": team_sprint,
        "my_sprint": my_sprint,
        "old_sprint": old_sprint,
        "bare": bare,
        "finished": finished,
    }


class TestCheckAndCreate:
    def test_first_run_creates_second_run_finds(self, service, workspace_id, busy_workspace):
        first = service.check_and_create_accountability_issues(USER_ID, workspace_id)

        assert len(first.missing_items) == 7
        assert len(first.created_issues) == 7
        assert first.existing_issues == []
        assert [i.type for i in first.created_issues] == [m.type for m in first.missing_items]

        second = service.check_and_create_accountability_issues(USER_ID, workspace_id)

        assert second.created_issues == []
        assert [i.id for i in second.existing_issues] == [i.id for i in first.created_issues]

    def test_created_issues_carry_item_details(self, service, workspace_id, busy_workspace):
        report = service.check_and_create_accountability_issues(USER_ID, workspace_id)

        for item, issue in zip(report.missing_items, report.created_issues):
            assert issue.title == item.message
            assert issue.target_id == item.target_id
            assert issue.due_date == item.due_date

    def test_ticket_numbers_continue_after_regular_issues(self, service, workspace_id, busy_workspace):
        report = service.check_and_create_accountability_issues(USER_ID, workspace_id)

        # three regular issues were created by the fixture
        assert [i.ticket_number for i in report.created_issues] == list(range(4, 11))

    def test_nothing_missing_nothing_created(self, service, workspace_id):
        report = service.check_and_create_accountability_issues(USER_ID, workspace_id)

        assert report.missing_items == []
        assert report.created_issues == []
        assert report.existing_issues == []

    def test_unknown_workspace(self, service):
        report = service.check_and_create_accountability_issues(USER_ID, "missing")
        assert report.missing_items == []


class TestFailFast:
    def test_failing_rule_fails_whole_check(self, session_factory, clock, events, store, workspace_id):
        store.create_project(workspace_id, USER_ID, "Apollo")

        def broken_rule(store, ctx):
            raise RuntimeError("query timeout")

        svc = AccountabilityService(session_factory, clock=clock, events=events,
                                    evaluators=[check_project_hypothesis, broken_rule])
        try:
            with pytest.raises(RuntimeError, match="query timeout"):
                svc.check_and_create_accountability_issues(USER_ID, workspace_id)
            with pytest.raises(RuntimeError):
                svc.check_missing_accountability(USER_ID, workspace_id)
        finally:
            svc.close()

        assert service_issue_count(session_factory, workspace_id) == 0


def service_issue_count(session_factory, workspace_id):
    session = session_factory()
    try:
        docs = (
            session.query(Document)
            .filter(Document.workspace_id == workspace_id)
            .filter(Document.document_type == DocumentType.ISSUE.value)
            .all()
        )
        return sum(1 for d in docs if (d.properties or {}).get("is_system_generated"))
    finally:
        session.close()


class TestActionItems:
    def test_sorted_by_urgency(self, service, workspace_id, busy_workspace):
        items = service.action_items(USER_ID, workspace_id)

        assert [(i["accountability_type"], i["days_overdue"]) for i in items] == [
            ("sprint_hypothesis", 2),
            ("sprint_start", 2),
            ("sprint_issues", 2),
            ("sprint_review", 2),
            ("standup", 0),
            ("project_hypothesis", -999),
            ("project_retro", -999),
        ]

    def test_item_shape(self, service, workspace_id, busy_workspace):
        items = {i["accountability_type"]: i for i in service.action_items(USER_ID, workspace_id)}

        review = items["sprint_review"]
        assert review["id"] == f"sprint_review-{busy_workspace['old_sprint']}"
        assert review["title"] == "Complete review for My Sprint 2"
        assert review["target_title"] == "My Sprint 2"
        assert review["due_date"] == "2024-01-15"
        assert review["state"] == "todo"
        assert review["priority"] == "high"

        assert items["project_retro"]["due_date"] is None
        assert items["project_retro"]["accountability_target_id"] == busy_workspace["finished"]

    def test_action_items_do_not_create_issues(self, service, session_factory, workspace_id, busy_workspace):
        service.action_items(USER_ID, workspace_id)
        assert service_issue_count(session_factory, workspace_id) == 0


class TestTypes:
    def test_missing_item_types_are_enum_members(self, service, workspace_id, busy_workspace):
        items = service.check_missing_accountability(USER_ID, workspace_id)
        assert all(isinstance(i.type, AccountabilityType) for i in items)
