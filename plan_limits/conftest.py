# plan_limits/conftest.py
import os
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import Column, Integer, MetaData, String, Table, insert, delete

from plan_limits.core import database
from plan_limits.core.metrics import METRICS
from plan_limits.engine import LimitEngine
from plan_limits.features.billing.provider import StaticSubscriptionProvider
from plan_limits.features.events.service import BLOCK, GRACE_START, WARNING, EventDispatcher
from plan_limits.features.plans.catalog import PlanCatalog
from plan_limits.features.usage.counters import CounterRegistry, TableCounter
from plan_limits.models.owner import OwnerRef

# Caller-owned rows counted by persistent caps
fixture_metadata = MetaData()
projects = Table(
    "test_projects",
    fixture_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("org_id", String(100), nullable=False),
    Column("status", String(20), nullable=False, server_default="active"),
)
seats = Table(
    "test_seats",
    fixture_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_type", String(100), nullable=False),
    Column("owner_id", String(100), nullable=False),
)

T0 = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

PLANS = {
    "free": {
        "name": "Free Plan",
        "default": True,
        "features": {"api_access": False, "exports": True},
        "limits": {
            "projects": {"to": 1, "after_limit": "grace_then_block", "grace": timedelta(days=7), "warn_at": [0.6, 0.8, 0.95]},
            "seats": {"to": 3, "after_limit": "block_usage"},
            "api_calls": {"to": 100, "per": "month", "after_limit": "block_usage"},
            "reports": {"to": 5, "per": "month", "after_limit": "grace_then_block", "grace": timedelta(days=2)},
            "notes": {"to": 2, "after_limit": "just_warn"},
        },
    },
    "pro": {
        "name": "Pro Plan",
        "highlighted": True,
        "price_ids": ["price_pro_monthly", "price_pro_yearly"],
        "features": {"api_access": True, "exports": True},
        "limits": {
            "projects": {"to": 10, "warn_at": [0.5, 0.9]},
            "seats": 10,
            "api_calls": {"to": 10_000, "per": "month", "after_limit": "block_usage"},
            "reports": {"to": 100, "per": "month"},
        },
        "unlimited": ["notes"],
    },
}


class FrozenClock:
    """Injectable clock; advance() moves time forward."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


@pytest.fixture(scope="function")
def db_url(tmp_path):
    """TEST_DATABASE_URL if set, else a throwaway SQLite file per test."""
    return os.getenv("TEST_DATABASE_URL") or f"sqlite:///{tmp_path / 'plan_limits.db'}"


@pytest.fixture(scope="function", autouse=True)
def db(db_url):
    """Fresh engine tables (and fixture tables) for every test."""
    engine = database.init_engine(db_url)
    database.reset_database()
    fixture_metadata.drop_all(bind=engine)
    fixture_metadata.create_all(bind=engine)
    METRICS.reset()
    yield engine
    fixture_metadata.drop_all(bind=engine)
    database.drop_all_tables()
    database.dispose_engine()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def catalog():
    return PlanCatalog.from_mapping(PLANS)


@pytest.fixture
def subscriptions():
    return StaticSubscriptionProvider()


@pytest.fixture
def counters():
    registry = CounterRegistry()
    registry.register(
        "projects",
        TableCounter(
            projects,
            owner_id_column="org_id",
            scopes={"active": lambda stmt: stmt.where(projects.c.status == "active")},
        ),
    )
    registry.register("seats", TableCounter(seats, owner_type_column="owner_type"))
    registry.register("notes", lambda owner: 0)
    return registry


@pytest.fixture
def recorded_events():
    return []


@pytest.fixture
def events(recorded_events):
    dispatcher = EventDispatcher()
    for event_type in (WARNING, GRACE_START, BLOCK):
        dispatcher.subscribe(event_type, recorded_events.append)
    return dispatcher


@pytest.fixture
def engine(catalog, subscriptions, counters, events, clock):
    return LimitEngine(
        catalog,
        subscription_provider=subscriptions,
        counters=counters,
        events=events,
        clock=clock,
    )


@pytest.fixture
def owner():
    return OwnerRef(owner_type="Organization", owner_id=f"org-{uuid4()}")


@pytest.fixture
def add_project(db):
    """Insert a project row for an owner."""
    def _add(owner: OwnerRef, status: str = "active") -> int:
        with database.get_db_session() as session:
            result = session.execute(insert(projects).values(org_id=owner.owner_id, status=status))
            return result.inserted_primary_key[0]
    return _add


@pytest.fixture
def remove_project(db):
    def _remove(project_id: int) -> None:
        with database.get_db_session() as session:
            session.execute(delete(projects).where(projects.c.id == project_id))
    return _remove


@pytest.fixture
def add_seat(db):
    def _add(owner: OwnerRef) -> None:
        with database.get_db_session() as session:
            session.execute(insert(seats).values(owner_type=owner.owner_type, owner_id=owner.owner_id))
    return _add
