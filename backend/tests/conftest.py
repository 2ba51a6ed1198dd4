import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest
from mongomock_motor import AsyncMongoMockClient

sys.path.insert(0, str(Path(__file__).parent.parent))

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "sogan_test")

from diamond_wallet.ledger_engine import LedgerEngine
from diamond_wallet.refill_scheduler import RefillScheduler


class FakeClock:
    """Settable clock for the ledger engine."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    # 10:00 in Tokyo
    return FakeClock(datetime(2026, 3, 10, 1, 0, tzinfo=timezone.utc))


@pytest.fixture
def db():
    return AsyncMongoMockClient()["sogan_test"]


@pytest.fixture
def engine(db, clock):
    return LedgerEngine(db, scheduler=RefillScheduler("Asia/Tokyo"), clock=clock)


@pytest.fixture
def app(engine):
    from server import app as fastapi_app
    from diamond_wallet.routes import get_ledger_engine

    fastapi_app.dependency_overrides[get_ledger_engine] = lambda: engine
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    """Async HTTP client bound to the app in-process."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def service_headers():
    from utils.auth import create_service_token

    return {"Authorization": f"Bearer {create_service_token('purchase-verifier')}"}
