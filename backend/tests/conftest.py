import asyncio
import inspect
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def ensure_event_loop() -> asyncio.AbstractEventLoop:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    if loop.is_closed():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    return loop


ensure_event_loop()

import uuid
from datetime import datetime, timedelta, timezone

import anyio
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from secure_booking.infra.communication import NoopConfirmationDispatcher
from secure_booking.infra.db import Base, get_db_session
from secure_booking.main import app
from secure_booking.settings import settings

DEFAULT_TENANT_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
ADMIN_TOKEN = "test-admin-token"


def slot(hours_from_now: float = 24, minutes: int = 60) -> tuple[datetime, datetime]:
    """A future time window ``minutes`` long."""
    start = datetime.now(tz=timezone.utc).replace(microsecond=0) + timedelta(hours=hours_from_now)
    return start, start + timedelta(minutes=minutes)


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture()
def file_session_maker(tmp_path):
    """Separate connections per session, for tests that race real transactions."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'race.db'}",
        connect_args={"timeout": 30},
        poolclass=NullPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_wal(dbapi_connection, connection_record):  # noqa: ANN001
        # Writers queue on the busy timeout instead of deadlocking against readers.
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield async_sessionmaker(engine, expire_on_commit=False)
    asyncio.run(engine.dispose())


@pytest.fixture(autouse=True)
def restore_settings():
    original_testing = settings.testing
    original_app_env = settings.app_env
    original_admin_token = settings.admin_token
    original_metrics = settings.metrics_enabled
    original_metrics_token = settings.metrics_token
    original_job_heartbeat = settings.job_heartbeat_required
    original_job_heartbeat_ttl = settings.job_heartbeat_ttl_seconds
    original_job_failure_threshold = settings.job_failure_threshold
    original_lock_timeout = settings.hold_lock_timeout_seconds
    original_default_vertical = settings.default_vertical
    original_trust_proxy_headers = settings.trust_proxy_headers
    original_trusted_proxy_cidrs = settings.trusted_proxy_cidrs_raw
    yield
    settings.testing = original_testing
    settings.app_env = original_app_env
    settings.admin_token = original_admin_token
    settings.metrics_enabled = original_metrics
    settings.metrics_token = original_metrics_token
    settings.job_heartbeat_required = original_job_heartbeat
    settings.job_heartbeat_ttl_seconds = original_job_heartbeat_ttl
    settings.job_failure_threshold = original_job_failure_threshold
    settings.hold_lock_timeout_seconds = original_lock_timeout
    settings.default_vertical = original_default_vertical
    settings.trust_proxy_headers = original_trust_proxy_headers
    settings.trusted_proxy_cidrs_raw = original_trusted_proxy_cidrs


@pytest.fixture(autouse=True)
def enable_test_mode():
    settings.testing = True
    settings.app_env = "dev"
    settings.admin_token = ADMIN_TOKEN
    app.state.app_settings = settings
    yield


@pytest.fixture(autouse=True)
def confirmation_dispatcher():
    dispatcher = NoopConfirmationDispatcher()
    original = getattr(app.state, "confirmation_dispatcher", None)
    app.state.confirmation_dispatcher = dispatcher
    yield dispatcher
    app.state.confirmation_dispatcher = original


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    rate_limiter = getattr(app.state, "rate_limiter", None)
    reset = getattr(rate_limiter, "reset", None) if rate_limiter else None
    if reset:
        if inspect.iscoroutinefunction(reset):
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(reset())
            else:
                anyio.from_thread.run(reset)
        else:
            reset()
    yield


@pytest.fixture()
def client(async_session_maker):
    ensure_event_loop()

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


@pytest.fixture()
def client_no_raise(async_session_maker):
    """Test client that returns HTTP responses instead of raising server exceptions."""

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


@pytest.fixture()
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}", "X-Admin-User": "ops@example.com"}
