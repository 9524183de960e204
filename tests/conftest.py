"""Pytest configuration and fixtures."""
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from timebill.config import settings
from timebill.main import app
from timebill.services.reconciliation_service import ReconciliationService
from timebill.services.timer_service import TimerService
from timebill.services.workspace import WorkspaceRegistry
from timebill.store.memory import InMemoryDataStore
from timebill.utils.auth import create_access_token

ACTOR_ID = "actor123"
SCOPE_ID = "scope-website"


class FakeClock:
    """Settable clock, called like ``datetime.now``."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Clock fixed on Wednesday 2025-03-12 09:00 UTC."""
    return FakeClock(datetime(2025, 3, 12, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock):
    return InMemoryDataStore(clock=clock)


@pytest.fixture
def reconciler(store, clock):
    return ReconciliationService(store, ACTOR_ID, clock=clock)


@pytest_asyncio.fixture
async def timer_service(store, reconciler, clock):
    """Session machine at 75 minor units per minute, with its timer released after the test."""
    service = TimerService(store, reconciler, ACTOR_ID, rate_per_minute=75.0, clock=clock)
    yield service
    await service.close()


@pytest.fixture
def auth_headers():
    token = create_access_token(actor_id=ACTOR_ID)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def other_auth_headers():
    token = create_access_token(actor_id="actor456")
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def app_client():
    """
    Create a test client backed by an in-memory Data Store.

    This fixture:
    - Installs a fresh workspace registry on the app
    - Yields an async HTTP client for testing
    - Closes every workspace after each test
    """
    registry = WorkspaceRegistry(InMemoryDataStore(), settings)
    previous = getattr(app.state, "workspaces", None)
    app.state.workspaces = registry

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as client:
        yield client

    await registry.close_all()
    app.state.workspaces = previous
