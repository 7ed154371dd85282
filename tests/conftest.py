import sys
import os
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

# Добавляем корень проекта в sys.path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from collection.coordinator import CollectionCoordinator
from collection.events import EventDispatcher
from collection.models import Actor, HandoffType, ROLE_ADMIN, ROLE_DRIVER, ROLE_SUPERVISOR
from database import queries as db_queries
from database.db import init_db

# Контейнеры возле Алматы: A и B в полутора километрах друг от друга, у C нет координат
BIN_A = ('BIN-A', 43.238949, 76.889709)
BIN_B = ('BIN-B', 43.250000, 76.900000)
BIN_C = ('BIN-C', None, None)


class FakeClock:
    """Controllable UTC clock for throttle and token-expiry behaviour."""
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest_asyncio.fixture
async def db(tmp_path, mocker):
    """A fresh SQLite database with seeded containers and one incineration plant."""
    path = tmp_path / "medwaste_test.db"
    mocker.patch('database.queries.DB_PATH', path)
    await init_db(path)
    for ref, lat, lon in (BIN_A, BIN_B, BIN_C):
        await db_queries.upsert_container(ref, 'CLINIC-1', 'medical', lat, lon)
    await db_queries.upsert_container('BIN-OLD', 'CLINIC-1', 'medical', None, None, is_active=False)
    await db_queries.upsert_plant('PLANT-1', 'Алматы Эко', 'Иван Оператор', '+77010000001')
    return path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def events() -> EventDispatcher:
    return EventDispatcher()


@pytest.fixture
def published(events) -> list:
    """Names and payloads of every published domain event, in order."""
    received = []

    async def _record(event):
        received.append(event)

    events.subscribe(_record)
    return received


@pytest.fixture
def coordinator(db, clock, events) -> CollectionCoordinator:
    return CollectionCoordinator.build(
        events=events, clock=clock, min_interval_seconds=10, token_ttl_hours=24, visit_proximity_meters=50
    )


@pytest.fixture
def driver() -> Actor:
    return Actor(1001, ROLE_DRIVER)


@pytest.fixture
def other_driver() -> Actor:
    return Actor(1002, ROLE_DRIVER)


@pytest.fixture
def supervisor() -> Actor:
    return Actor(2001, ROLE_SUPERVISOR)


@pytest.fixture
def admin() -> Actor:
    return Actor(9001, ROLE_ADMIN)


@pytest.fixture
def complete_facility_handoff(coordinator, supervisor, driver):
    """Runs the facility -> driver handoff of a session to completion and returns it."""
    async def _run(session_id: str):
        receipt = await coordinator.create_handoff(supervisor, session_id, HandoffType.FACILITY_TO_DRIVER)
        await coordinator.confirm_handoff(supervisor, receipt.handoff.handoff_id)
        return await coordinator.confirm_handoff(driver, receipt.handoff.handoff_id, receipt.confirmation_token)
    return _run
