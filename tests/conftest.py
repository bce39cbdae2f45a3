"""
MedPlan — Test Infrastructure (conftest.py)
===========================================
Provides:
  - Per-test sqlite database (DB_PATH patched, schema recreated)
  - Controllable clock and a recording alert surface
  - run() for driving the async delivery path from plain tests
  - A reminder engine on a scheduler that is never started
  - FastAPI TestClient with the background scheduler disabled
  - DB assertion helpers
"""

import asyncio
import os
import sys
import sqlite3
import datetime
import pytest

# Ensure project root is on path
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT_DIR)

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from medplan import db as medplan_db
from medplan.alerts.base import AlertSurface, DeliveryResult
from medplan.config import Settings, set_config
from medplan.errors import PersistenceUnavailable
from medplan.planner import MedicationRule
from medplan.reminders import scheduler_jobs
from medplan.reminders.engine import ReminderEngine
from medplan.reminders.models import SqliteReminderStore

UTC = datetime.timezone.utc

# 2026-03-10 06:00 UTC: before the first dose of the default test rule
START = datetime.datetime(2026, 3, 10, 6, 0, tzinfo=UTC)
DAY = START.date()


# ============================================================================
# Test doubles
# ============================================================================

def run(coro):
    """Run one coroutine to completion on a fresh event loop."""
    return asyncio.run(coro)


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime.datetime = START):
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def set(self, hour: int, minute: int = 0, day: datetime.date = DAY):
        self.now = datetime.datetime.combine(day, datetime.time(hour, minute), tzinfo=UTC)

    def advance(self, **kwargs):
        self.now += datetime.timedelta(**kwargs)


class FakeSurface(AlertSurface):
    """
    Records every display() call; can be told to deny permission or fail.

    ``on_display`` is awaited while the alert is in flight.
    """

    surface_name = "fake"

    def __init__(self, granted: bool = True):
        self.granted = granted
        self.fail = False
        self.on_display = None
        self.calls = []
        self.displayed = []

    def is_configured(self) -> bool:
        return True

    def request_permission(self) -> bool:
        return self.granted

    async def display(self, payload) -> DeliveryResult:
        self.calls.append(payload)
        if self.on_display is not None:
            await self.on_display(payload)
        if self.fail:
            return DeliveryResult(success=False, surface=self.surface_name, tag=payload.tag, error="surface offline")
        self.displayed.append(payload)
        return DeliveryResult(success=True, surface=self.surface_name, tag=payload.tag)


class FakeSocket:
    """Stands in for a starlette WebSocket; ``broken`` makes every send raise."""

    def __init__(self, broken: bool = False):
        self.broken = broken
        self.sent = []

    async def accept(self):
        pass

    async def send_json(self, data):
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(data)


class FlakyStore(SqliteReminderStore):
    """SqliteReminderStore that raises PersistenceUnavailable while ``broken``."""

    def __init__(self, db_path=None):
        super().__init__(db_path)
        self.broken = False

    def _conn(self):
        if self.broken:
            raise PersistenceUnavailable("disk unavailable")
        return super()._conn()


def make_rule(rule_id="rule1", name="Amoxicillin", doses_per_day=3, window_start="07:00",
              window_end="23:00", start_date="2026-03-01", end_date=None, active=True, dosage="500mg"):
    return MedicationRule(
        id=rule_id,
        name=name,
        doses_per_day=doses_per_day,
        window_start=window_start,
        window_end=window_end,
        start_date=start_date,
        end_date=end_date,
        dosage=dosage,
        active=active,
    )


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Fresh database, settings cache and engine singletons for every test."""
    db_path = tmp_path / "medplan_test.db"
    monkeypatch.setattr(medplan_db, "DB_PATH", db_path)
    monkeypatch.setattr(medplan_db, "_SCHEMA_INIT_DONE", False)
    Settings.reset_cache()
    scheduler_jobs.reset_engine()

    yield db_path

    scheduler_jobs.reset_engine()
    Settings.reset_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def surface():
    return FakeSurface()


@pytest.fixture
def scheduler():
    """Scheduler that holds jobs as pending without ever running them."""
    return AsyncIOScheduler(timezone=UTC)


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def rule():
    return make_rule()


@pytest.fixture
def taken():
    return []


@pytest.fixture
def engine(store, surface, scheduler, clock, rule, taken):
    return ReminderEngine(
        store=store,
        surface=surface,
        scheduler=scheduler,
        clock=clock,
        list_active_rules=lambda: [rule],
        on_dose_taken=taken.append,
        tolerance_seconds=30,
        staleness_seconds=3600,
        horizon_days=1,
        snooze_minutes=10,
        min_spacing_minutes=120,
    )


@pytest.fixture
def api_surface():
    return FakeSurface()


@pytest.fixture
def api_engine(api_surface):
    """Process-wide engine wired to the real rule table and a fake surface."""
    from medplan.medications.models import get_rules

    engine = ReminderEngine(
        store=SqliteReminderStore(),
        surface=api_surface,
        scheduler=AsyncIOScheduler(timezone=UTC),
        list_active_rules=lambda: get_rules(active_only=True),
        on_dose_taken=scheduler_jobs._record_taken,
    )
    scheduler_jobs._engine = engine
    return engine


@pytest.fixture
def client(api_engine):
    """FastAPI TestClient; the background scheduler stays off."""
    from starlette.testclient import TestClient
    import main

    set_config("scheduler_enabled", False)
    with TestClient(main.app) as c:
        yield c


# ============================================================================
# DB helpers
# ============================================================================

def get_test_db():
    """Direct connection to the test database for assertions."""
    conn = sqlite3.connect(str(medplan_db.DB_PATH), timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def db_query(sql, params=()):
    """Run a query against the test DB and return list of dicts."""
    conn = get_test_db()
    rows = conn.execute(sql, params).fetchall()
    result = [dict(r) for r in rows]
    conn.close()
    return result


def db_count(table, where="1=1", params=()):
    """Count rows in a table."""
    conn = get_test_db()
    row = conn.execute(f"SELECT COUNT(*) AS cnt FROM {table} WHERE {where}", params).fetchone()
    conn.close()
    return row["cnt"]
