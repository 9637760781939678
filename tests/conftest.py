from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from fulfillment.config.settings import Settings, get_settings
from fulfillment.infra.database import Database, get_database
from fulfillment.main import create_app
from fulfillment.v1.core.registries import StageRegistry
from fulfillment.v1.jobs.dispatcher import StageDispatcher
from fulfillment.v1.jobs.routes import get_stage_registry
from fulfillment.v1.jobs.runner import JobRunner
from fulfillment.v1.jobs.runs import RunTracker
from fulfillment.v1.jobs.schemas import JobCreate
from fulfillment.v1.jobs.store import JobStore

# Import models to ensure they're registered
from fulfillment.v1.jobs import models  # noqa: F401

CRON_SECRET = "test-cron-secret"


class FakeClock:
    """Controllable UTC clock for time-based queue behavior."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a fresh SQLite file per test."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}",
        environment="test",
        debug=False,
        cron_secret=CRON_SECRET,
        admin_key=None,
        worker_id="test-worker",
        worker_poll_interval_ms=10,
    )


@pytest.fixture
async def database(settings: Settings) -> AsyncGenerator[Database, None]:
    """Create the schema on a per-test database."""
    database = Database(settings)
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
def registry() -> StageRegistry:
    """Isolated stage registry; tests register their own processors."""
    return StageRegistry()


@pytest.fixture
def store(database: Database, settings: Settings, clock: FakeClock) -> JobStore:
    return JobStore(database, settings, clock=clock)


@pytest.fixture
def tracker(database: Database, clock: FakeClock) -> RunTracker:
    return RunTracker(database, clock=clock)


@pytest.fixture
def runner(
    settings: Settings,
    store: JobStore,
    tracker: RunTracker,
    registry: StageRegistry,
) -> JobRunner:
    return JobRunner(settings, store, tracker, StageDispatcher(registry))


@pytest.fixture
def enqueue(store: JobStore):
    """Enqueue helper with sensible defaults."""

    async def _enqueue(correlation_id: str = "C1", stage: str = "ingest", **kwargs):
        return await store.enqueue(
            JobCreate(correlation_id=correlation_id, stage=stage, **kwargs)
        )

    return _enqueue


@pytest.fixture
def app(settings: Settings, database: Database, registry: StageRegistry) -> FastAPI:
    """Application wired to the per-test database and registry."""
    app = create_app()
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_database] = lambda: database
    app.dependency_overrides[get_stage_registry] = lambda: registry
    return app


@pytest.fixture
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def cron_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {CRON_SECRET}"}
