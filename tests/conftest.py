"""Shared fixtures.

Environment defaults are set before any studygate import so that the
settings singleton is built for tests: mock provider, database window
store and a known admin token.
"""

import os

os.environ.setdefault("LLM_PROVIDER", "mock")
os.environ.setdefault("WINDOW_STORE_BACKEND", "database")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./studygate-test.db")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from studygate.app.core.config import settings
from studygate.app.core.metrics import get_metrics_collector, reset_metrics_collector
from studygate.app.db.async_session import close_async_engine, get_async_session
from studygate.app.db.crud import create_assignment_with_steps, create_user
from studygate.app.db.init_db import init_database
from studygate.app.providers.factory import reset_provider
from studygate.app.providers.mock import MockProvider
from studygate.app.services.rate_limit import (
    InMemoryWindowStore,
    RateLimiter,
    reset_rate_limiting,
)
from studygate.app.services.request_gate import RequestGate, get_request_gate, reset_request_gate
from studygate.app.services.stream_relay import StreamRelay


class FakeClock:
    """Manually advanced clock for window stores."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def fresh_metrics():
    reset_metrics_collector()
    yield
    reset_metrics_collector()


@pytest_asyncio.fixture
async def db(tmp_path, monkeypatch):
    """A fresh SQLite database file with all tables."""
    monkeypatch.setattr(
        settings, "database_url_override", f"sqlite+aiosqlite:///{tmp_path / 'studygate.db'}"
    )
    await close_async_engine()
    await init_database()
    yield
    reset_request_gate()
    reset_provider()
    await reset_rate_limiting()
    await close_async_engine()


@pytest_asyncio.fixture
async def user(db):
    """A user and its raw API key."""
    async with get_async_session() as session:
        user, api_key = await create_user(session, email="student@example.edu")
    return user, api_key


@pytest_asyncio.fixture
async def other_user(db):
    async with get_async_session() as session:
        user, api_key = await create_user(session, email="other@example.edu")
    return user, api_key


@pytest.fixture
def auth_headers(user):
    _, api_key = user
    return {"Authorization": f"Bearer {api_key}"}


@pytest_asyncio.fixture
async def assignment(user):
    owner, _ = user
    async with get_async_session() as session:
        return await create_assignment_with_steps(
            session,
            user_id=owner.id,
            title="Lab report",
            original_text="Write a lab report on pendulum motion.",
            steps=[
                {"title": "Collect data", "description": "Measure ten swings."},
                {"title": "Write methods", "description": "Describe the setup."},
            ],
        )


@pytest.fixture
def provider():
    return MockProvider(fragments=["Hello", ", ", "world"])


@pytest.fixture
def window_store(clock):
    return InMemoryWindowStore(clock=clock)


@pytest.fixture
def gate(window_store, provider):
    metrics = get_metrics_collector()
    return RequestGate(
        RateLimiter(window_store, metrics=metrics),
        StreamRelay(provider, buffer_size=4, metrics=metrics),
        metrics=metrics,
    )


@pytest_asyncio.fixture
async def client(db, gate):
    """HTTP client against a fresh app wired to the test gate."""
    from studygate.app.main import create_app

    app = create_app()
    app.dependency_overrides[get_request_gate] = lambda: gate
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
