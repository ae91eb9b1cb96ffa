"""
Shared fixtures.

Every test gets its own SQLite file database, so tests are isolated and
need no running Postgres.
"""
import asyncio
from datetime import timedelta
from typing import Any, Optional

import httpx
import pytest

from jobscheduler.db.session import build_engine, build_session_factory, create_tables
from jobscheduler.domain.models import JobContext, JobSpec
from jobscheduler.main import create_app
from jobscheduler.scheduler.dispatcher import Dispatcher
from jobscheduler.services.signals import SignalProcessor
from jobscheduler.settings import Settings
from jobscheduler.utils.timeutils import utcnow


class RecordingExecutor:
    """Executor double: records every job it is handed."""

    def __init__(self):
        self.calls: list[JobContext] = []
        self.result: dict[str, Any] = {"ok": True}
        self.error: Optional[Exception] = None
        self.delay: float = 0.0

    async def execute(self, job: JobContext) -> dict:
        self.calls.append(job)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


def once_spec(name: str = "once-job", in_seconds: int = 3600, **kwargs) -> JobSpec:
    execute_at = (utcnow() + timedelta(seconds=in_seconds)).isoformat()
    return JobSpec(name=name, type="once", execute_at=execute_at, **kwargs)


def cron_spec(name: str = "cron-job", expression: str = "rate(15 minutes)", **kwargs) -> JobSpec:
    return JobSpec(name=name, type="cron", schedule_expression=expression, **kwargs)


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def database_uri(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'scheduler.db'}"


@pytest.fixture
async def engine(database_uri):
    engine = build_engine(database_uri)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


# ============================================================================
# Dispatch
# ============================================================================


@pytest.fixture
def executor() -> RecordingExecutor:
    return RecordingExecutor()


@pytest.fixture
def dispatcher(session_factory, executor) -> Dispatcher:
    return Dispatcher(session_factory, executor, execution_timeout=5.0)


@pytest.fixture
def processor(session_factory, dispatcher) -> SignalProcessor:
    return SignalProcessor(session_factory, dispatcher, concurrency=1)


# ============================================================================
# HTTP
# ============================================================================


@pytest.fixture
def app_settings(database_uri) -> Settings:
    return Settings(SQLALCHEMY_DATABASE_URI=database_uri, SCHEDULER_ENABLED=False)


@pytest.fixture
async def app(app_settings):
    app = create_app(app_settings)
    async with app.router.lifespan_context(app):
        yield app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
