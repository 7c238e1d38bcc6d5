"""Tests for RemediationMaterializer and ticket allocation."""

from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import date

import pytest

from accountability import materializer as materializer_module
from accountability.document_props import AccountabilityType, DocumentType, IssueProps
from accountability.entities import Document
from accountability.materializer import AccountabilityInvariantError, RemediationMaterializer
from accountability.workspace_lock import WorkspaceLock

from tests.conftest import USER_ID


def _issues(session_factory, workspace_id):
    session = session_factory()
    try:
        return (
            session.query(Document)
            .filter(Document.workspace_id == workspace_id)
            .filter(Document.document_type == DocumentType.ISSUE.value)
            .order_by(Document.ticket_number.asc())
            .all()
        )
    finally:
        session.close()


def _materialize(materializer, workspace_id, target_id="sprint-1", kind=AccountabilityType.SPRINT_START):
    return materializer.materialize(kind, target_id, USER_ID, workspace_id, "Start Sprint 1", date(2024, 1, 8))


class TestMaterialize:
    def test_creates_open_high_priority_issue(self, service, session_factory, workspace_id):
        result = _materialize(service.materializer, workspace_id)

        assert result.was_created is True
        assert result.issue.ticket_number == 1
        assert result.issue.type is AccountabilityType.SPRINT_START
        assert result.issue.target_id == "sprint-1"

        [doc] = _issues(session_factory, workspace_id)
        props = IssueProps.model_validate(doc.properties)
        assert doc.id == result.issue.id
        assert doc.title == "Start Sprint 1"
        assert doc.created_by == USER_ID
        assert props.state == "todo"
        assert props.priority == "high"
        assert props.source == "action_items"
        assert props.is_system_generated is True
        assert props.assignee_id == USER_ID
        assert props.due_date == "2024-01-08"
        assert props.accountability_target_id == "sprint-1"
        assert props.accountability_type is AccountabilityType.SPRINT_START

    def test_second_call_returns_existing(self, service, session_factory, workspace_id):
        first = _materialize(service.materializer, workspace_id)
        second = _materialize(service.materializer, workspace_id)

        assert second.was_created is False
        assert second.issue.id == first.issue.id
        assert second.issue.ticket_number == first.issue.ticket_number
        assert len(_issues(session_factory, workspace_id)) == 1

    def test_same_target_different_type_is_separate(self, service, session_factory, workspace_id):
        a = _materialize(service.materializer, workspace_id, kind=AccountabilityType.SPRINT_START)
        b = _materialize(service.materializer, workspace_id, kind=AccountabilityType.SPRINT_HYPOTHESIS)

        assert a.issue.id != b.issue.id
        assert [a.issue.ticket_number, b.issue.ticket_number] == [1, 2]

    def test_accepts_type_as_string(self, service, workspace_id):
        result = service.materializer.materialize("project_retro", "p-1", USER_ID, workspace_id, "Retro", None)

        assert result.issue.type is AccountabilityType.PROJECT_RETRO
        assert result.issue.due_date is None

    def test_completed_issue_allows_a_new_one(self, service, workspace_id):
        first = _materialize(service.materializer, workspace_id)
        service.auto_complete_accountability_issue("sprint-1", AccountabilityType.SPRINT_START, workspace_id)

        again = _materialize(service.materializer, workspace_id)

        assert again.was_created is True
        assert again.issue.id != first.issue.id
        assert again.issue.ticket_number == 2

    def test_ticket_numbers_follow_regular_issues(self, service, store, workspace_id):
        store.create_issue(workspace_id, "Regular 1")
        store.create_issue(workspace_id, "Regular 2")

        assert _materialize(service.materializer, workspace_id).issue.ticket_number == 3

    def test_ticket_numbers_are_per_workspace(self, service, store, workspace_id):
        other_ws = store.create_workspace(date(2024, 1, 1))
        store.create_issue(workspace_id, "Regular")

        assert _materialize(service.materializer, other_ws).issue.ticket_number == 1

    def test_duplicate_open_issues_are_an_invariant_error(self, service, session_factory, workspace_id):
        session = session_factory()
        try:
            for n in (1, 2):
                session.add(Document(
                    workspace_id=workspace_id,
                    document_type=DocumentType.ISSUE.value,
                    title=f"dup {n}",
                    ticket_number=n,
                    properties={
                        "state": "todo",
                        "accountability_target_id": "sprint-1",
                        "accountability_type": "sprint_start",
                    },
                ))
            session.commit()
        finally:
            session.close()

        with pytest.raises(AccountabilityInvariantError):
            _materialize(service.materializer, workspace_id)


class TestCreateFailure:
    def test_failed_insert_leaves_nothing_behind(self, service, session_factory, workspace_id, monkeypatch):
        def boom(session, ws):
            raise RuntimeError("db went away")

        monkeypatch.setattr(materializer_module, "next_ticket_number", boom)
        with pytest.raises(RuntimeError, match="db went away"):
            _materialize(service.materializer, workspace_id)
        monkeypatch.undo()

        assert _issues(session_factory, workspace_id) == []
        assert _materialize(service.materializer, workspace_id).issue.ticket_number == 1

    def test_lock_is_released_on_failure(self, session_factory, workspace_id, monkeypatch):
        class RecordingLock(WorkspaceLock):
            def __init__(self):
                self.held = 0
                self.released = 0

            @contextmanager
            def hold(self, session, ws):
                self.held += 1
                try:
                    yield
                finally:
                    self.released += 1

        def boom(session, ws):
            raise RuntimeError("db went away")

        lock = RecordingLock()
        materializer = RemediationMaterializer(session_factory, workspace_lock=lock)
        monkeypatch.setattr(materializer_module, "next_ticket_number", boom)

        with pytest.raises(RuntimeError):
            _materialize(materializer, workspace_id)

        assert lock.held == lock.released == 1
        assert _issues(session_factory, workspace_id) == []


class TestConcurrency:
    def test_concurrent_same_key_creates_exactly_one(self, service, session_factory, workspace_id):
        n = 8
        with ThreadPoolExecutor(max_workers=n) as pool:
            results = list(pool.map(lambda _: _materialize(service.materializer, workspace_id), range(n)))

        created = [r for r in results if r.was_created]
        assert len(created) == 1
        assert sum(1 for r in results if not r.was_created) == n - 1
        assert {r.issue.id for r in results} == {created[0].issue.id}
        assert len(_issues(session_factory, workspace_id)) == 1

    def test_concurrent_distinct_keys_get_consecutive_tickets(self, service, session_factory, workspace_id):
        n = 10
        with ThreadPoolExecutor(max_workers=n) as pool:
            results = list(pool.map(
                lambda i: _materialize(service.materializer, workspace_id, target_id=f"sprint-{i}"),
                range(n),
            ))

        assert all(r.was_created for r in results)
        tickets = sorted(r.issue.ticket_number for r in results)
        assert tickets == list(range(1, n + 1))
        assert [d.ticket_number for d in _issues(session_factory, workspace_id)] == tickets

    def test_workspaces_allocate_independently(self, service, store, workspace_id):
        other_ws = store.create_workspace(date(2024, 1, 1))
        jobs = [(ws, i) for ws in (workspace_id, other_ws) for i in range(5)]

        with ThreadPoolExecutor(max_workers=len(jobs)) as pool:
            results = list(pool.map(
                lambda job: (job[0], _materialize(service.materializer, job[0], target_id=f"t-{job[1]}")),
                jobs,
            ))

        for ws in (workspace_id, other_ws):
            tickets = sorted(r.issue.ticket_number for w, r in results if w == ws)
            assert tickets == [1, 2, 3, 4, 5]
