# tests/conftest.py
import os
import threading
from decimal import Decimal
from uuid import UUID

import pytest
from fastapi.testclient import TestClient

# Local SQLite file by default; export DATABASE_URL=postgresql+psycopg://... to run against Postgres
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///./loyalty_test.db")
os.environ.setdefault("POLLER_ENABLED", "false")

from loyalty.accrual import OrderSnapshot  # noqa
from loyalty.config import settings  # noqa
from loyalty.db import Database  # noqa
from loyalty.errors import OracleNotYetAvailable  # noqa
from loyalty.main import create_app  # noqa
from loyalty.models import Base, OrderState  # noqa
from loyalty.store import LedgerStore  # noqa

USER_A = UUID("00000000-0000-0000-0000-00000000000a")
USER_B = UUID("00000000-0000-0000-0000-00000000000b")


def luhn_complete(prefix: str) -> str:
    """Append the check digit that makes `prefix` a valid order number."""
    digits = [int(c) for c in prefix + "0"]
    odd = digits[-1::-2]
    even = digits[-2::-2]
    total = sum(odd) + sum(sum(divmod(2 * d, 10)) for d in even)
    return prefix + str((10 - total % 10) % 10)


class FakeAccrualSource:
    """Scripted accrual system: unknown orders are 'not registered yet'."""

    def __init__(self):
        self.outcomes = {}
        self.calls = []
        self.lock = threading.Lock()

    def processed(self, number, amount):
        self.outcomes[number] = OrderSnapshot(number, OrderState.PROCESSED, Decimal(str(amount)))

    def reports(self, number, state):
        self.outcomes[number] = OrderSnapshot(number, state)

    def fails(self, number, exc):
        self.outcomes[number] = exc

    def fetch_state(self, number):
        with self.lock:
            self.calls.append(number)
        outcome = self.outcomes.get(number)
        if outcome is None:
            raise OracleNotYetAvailable(number)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def database():
    db = Database(settings.database_url)
    # Ensure tables exist, then wipe them so tests don't interfere
    Base.metadata.create_all(bind=db.engine)
    with db.engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    yield db
    db.dispose()


@pytest.fixture
def store(database):
    return LedgerStore(database, currency="POINTS")


@pytest.fixture
def oracle():
    return FakeAccrualSource()


@pytest.fixture
def client(database):
    with TestClient(create_app()) as c:
        yield c


def headers(user: UUID) -> dict:
    return {"X-User-ID": str(user)}
