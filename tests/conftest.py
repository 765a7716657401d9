"""Root conftest for all tests.

Reference day for every fixture is Wednesday 2026-02-11 in Europe/Paris.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

import coachplan.db.session as session_module
from coachplan.coach.pipeline import ChangePipeline
from coachplan.db.models import Base, Schedule, ScheduledItem
from coachplan.db.session import get_session
from coachplan.plans import repository
from coachplan.plans.types import ItemSnapshot

TODAY = "2026-02-11"
PLAN_ID = "plan-1"


# Enable foreign key constraints for SQLite
@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _item(item_id: str, iso_date: str, title: str, **kwargs) -> ItemSnapshot:
    return ItemSnapshot(id=item_id, date=iso_date, title=title, **kwargs)


@pytest.fixture
def today() -> str:
    return TODAY


@pytest.fixture
def fixed_now() -> datetime:
    """09:00 UTC, 10:00 in Paris, on the reference day."""
    return datetime(2026, 2, 11, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def sample_items() -> list[ItemSnapshot]:
    """Two weeks around the reference day plus an early-March block.

    Week of 9 Feb: Mon (completed), Tue (past), Thu, Fri, Sat. Wed 11 and Sun 15 are free.
    """
    return [
        _item("item-0209", "2026-02-09", "Easy Run", status="completed", duration_minutes=40),
        _item("item-0210", "2026-02-10", "Tempo Run", duration_minutes=50),
        _item("item-0212", "2026-02-12", "Interval Session", duration_minutes=60, tags=("hard",)),
        _item("item-0213", "2026-02-13", "Easy Run", duration_minutes=40),
        _item("item-0214", "2026-02-14", "Long Run", duration_minutes=100, distance_km=18.0),
        _item("item-0216", "2026-02-16", "Easy Run", duration_minutes=40),
        _item("item-0217", "2026-02-17", "Tempo Run", duration_minutes=50),
        _item("item-0219", "2026-02-19", "Easy Run", duration_minutes=45),
        _item("item-0221", "2026-02-21", "Long Run", duration_minutes=110, distance_km=20.0),
        _item("item-0301", "2026-03-01", "Long Run", duration_minutes=120, distance_km=22.0),
        _item("item-0302", "2026-03-02", "Easy Run", duration_minutes=40),
    ]


@pytest.fixture
def db_engine(monkeypatch):
    """Isolated in-memory SQLite database patched into coachplan.db.session."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    monkeypatch.setattr(session_module, "_engine", engine)
    monkeypatch.setattr(session_module, "_SessionLocal", None)
    yield engine
    engine.dispose()


@pytest.fixture
def seed_schedule(db_engine, sample_items):
    """Factory inserting a schedule with the sample items (or custom ones)."""

    def _seed(plan_id: str = PLAN_ID, version: int = 1, items: list[ItemSnapshot] | None = None) -> str:
        with get_session() as session:
            session.add(Schedule(id=plan_id, user_id="user-1", timezone="Europe/Paris", version=version))
            for item in sample_items if items is None else items:
                session.add(
                    ScheduledItem(
                        id=item.id,
                        schedule_id=plan_id,
                        date=item.date,
                        title=item.title,
                        item_type=item.item_type,
                        status=item.status,
                        duration_minutes=item.duration_minutes,
                        distance_km=item.distance_km,
                        tags=list(item.tags),
                    )
                )
        return plan_id

    return _seed


@pytest.fixture
def schedule_id(seed_schedule) -> str:
    return seed_schedule()


@pytest.fixture
def load_snapshot(db_engine):
    def _load(plan_id: str = PLAN_ID):
        with get_session() as session:
            return repository.get_schedule_snapshot(session, plan_id)

    return _load


class FakeDrafter:
    """Intent drafter double: returns queued payloads and records contexts."""

    def __init__(self, *payloads: dict):
        self.payloads = list(payloads)
        self.contexts = []

    async def draft(self, context):
        self.contexts.append(context)
        if not self.payloads:
            raise AssertionError("FakeDrafter called more times than expected")
        return self.payloads.pop(0)


@pytest.fixture
def drafter_factory():
    return FakeDrafter


@pytest.fixture
def make_pipeline(fixed_now):
    def _make(drafter, *, now: datetime | None = None) -> ChangePipeline:
        return ChangePipeline(drafter, clock=lambda: now or fixed_now)

    return _make
