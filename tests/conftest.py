from __future__ import annotations

import os

# keep the app's own engine off the project database file
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from datetime import datetime, timedelta, timezone
from typing import List, Tuple

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from agritrace import inventory, schemas
from agritrace.config import Settings
from agritrace.db import Base, get_db
from agritrace.deps import get_workflow
from agritrace.errors import NotificationDispatchFailure
from agritrace.main import app
from agritrace.notifications import NotificationDispatcher, Role
from agritrace.workflow import BatchWorkflow


UTC = timezone.utc


class ClockStub:
    """Mutable clock so tests can control record timestamps."""

    def __init__(self, initial: datetime | None = None):
        self._now = initial or datetime(2025, 3, 1, 8, 0, tzinfo=UTC)

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, **delta_kwargs) -> None:
        self._now += timedelta(**delta_kwargs)

    def __call__(self) -> datetime:
        return self._now


class RecordingSink:
    """Keeps every delivered notification; roles in ``failing`` raise instead."""

    def __init__(self):
        self.sent: List[Tuple[Role, schemas.NotificationPayload]] = []
        self.failing: set = set()

    def deliver(self, notification_id, role, payload, sent_at) -> None:
        if role in self.failing:
            raise NotificationDispatchFailure(f"{role.value} endpoint unreachable")
        self.sent.append((role, payload))

    def events(self) -> List[str]:
        return [p.event for _, p in self.sent]

    def roles_for(self, event: str) -> List[str]:
        return [r.value for r, p in self.sent if p.event == event]


def make_engine(url: str = "sqlite:///:memory:"):
    if url == "sqlite:///:memory:":
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(url, connect_args={"check_same_thread": False})


@pytest.fixture
def session_factory():
    engine = make_engine()
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield TestingSessionLocal
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return ClockStub()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def workflow(clock, sink):
    config = Settings(REGISTERED_EXPORTERS=["EXP-ACME", "EXP-KOLA"], INTERESTED_BUYERS=["B1", "B2", "B3"])
    return BatchWorkflow(NotificationDispatcher(sink, clock=clock), clock=clock, config=config)


@pytest.fixture
def api_client(session_factory, workflow, clock, sink):
    """FastAPI TestClient wired to an isolated in-memory SQLite DB."""

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_workflow] = lambda: workflow

    with TestClient(app) as client:
        yield client, session_factory, clock, sink

    app.dependency_overrides.clear()


def ready_schedule(db, clock, *, schedule_id="SCH-010", farmer_id="FRM001", crop_type="Coffee", plot_id="PLOT-7"):
    return inventory.create_schedule(
        db,
        schemas.CropScheduleCreate(
            schedule_id=schedule_id,
            farmer_id=farmer_id,
            plot_id=plot_id,
            crop_type=crop_type,
            crop_variety="Robusta",
            expected_yield=500,
            status="ready_for_harvest",
        ),
        now=clock(),
    )


def harvested_batch(db, workflow, clock, **schedule_kwargs) -> str:
    """Create a ready schedule and harvest it; returns the batch code."""
    schedule = ready_schedule(db, clock, **schedule_kwargs)
    clock.advance(minutes=1)
    result = workflow.harvest(
        db,
        schedule.schedule_id,
        schemas.HarvestIn(actual_yield=480, quality_grade="Grade A", harvest_date="2025-03-01"),
    )
    return result["batchCode"]
