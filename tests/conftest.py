"""Shared fixtures: a file-backed SQLite database per test and a fixed clock."""

from datetime import date, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from accountability.accountability_service import AccountabilityService
from accountability.auto_resolution import ArtifactEventBus
from accountability.entities import Base
from accountability.workspace_lock import ProcessWorkspaceLock

USER_ID = "user-123"
OTHER_USER_ID = "user-456"


class FixedClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'accountability.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def clock():
    # Monday of sprint 2 for a workspace starting 2024-01-01
    return FixedClock(datetime(2024, 1, 8, 10, 0))


@pytest.fixture
def events():
    return ArtifactEventBus()


@pytest.fixture
def workspace_lock():
    return ProcessWorkspaceLock()


@pytest.fixture
def service(session_factory, clock, events, workspace_lock):
    svc = AccountabilityService(session_factory, clock=clock, events=events, workspace_lock=workspace_lock)
    yield svc
    svc.close()


@pytest.fixture
def store(service):
    return service.store


@pytest.fixture
def workspace_id(store):
    return store.create_workspace(date(2024, 1, 1), name="Test Workspace")
