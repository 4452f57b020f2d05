"""Shared pytest fixtures for the telemetry service test suite."""

import os
import tempfile

_TEST_DB = os.path.join(tempfile.gettempdir(), "telemetry-test.db")
if os.path.exists(_TEST_DB):
    os.remove(_TEST_DB)

# Settings are read at import time, so the environment must be ready first
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DB}"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["RATE_LIMIT_ENABLED"] = "true"
os.environ["RETENTION_SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["ENERGY_TIMEZONE"] = "UTC"

from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import List  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from app.core.database import AsyncSessionLocal, Base, close_db, engine, init_db  # noqa: E402
from app.main import app  # noqa: E402
from app.models.device import Device  # noqa: E402
from tests.factories import DEMO_DEVICES  # noqa: E402


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def day_start(now: datetime) -> datetime:
    """UTC midnight two days ago, inside the accepted timestamp tolerance"""
    return now.replace(hour=0, minute=0, second=0, microsecond=0) - timedelta(days=2)


@pytest.fixture
async def database():
    """Fresh schema for one test, dropped afterwards."""
    await init_db()
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await close_db()


@pytest.fixture
async def db_session(database):
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
async def devices(db_session) -> List[Device]:
    """Register the demo devices"""
    rows = [Device(**fields) for fields in DEMO_DEVICES]
    db_session.add_all(rows)
    await db_session.commit()
    return rows


@pytest.fixture
async def client(database) -> AsyncClient:
    """Async test client that talks directly to the ASGI app with its lifespan running."""
    async with app.router.lifespan_context(app):
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://testserver",
        ) as ac:
            yield ac
