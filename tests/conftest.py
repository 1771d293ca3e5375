import os
from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from jobhub.config.settings import Settings, get_settings
from jobhub.infra.database import Base, get_session
from jobhub.main import create_app
from jobhub.v1.core.security import Principal, get_principal
from jobhub.v1.jobs.claims import ClaimEngine

# Import models to ensure they're registered
from jobhub.v1.jobs.models import Job, Worker, utcnow  # noqa: F401
from jobhub.v1.jobs.retry import RetryPolicy
from jobhub.v1.jobs.store import JobStore

TABLES = ("job_execution_logs", "jobs", "job_definitions", "job_workers")


def _database_url() -> str | None:
    database_url = os.getenv("DATABASE_URL")
    if not database_url or "postgresql" not in database_url:
        return None
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


@pytest.fixture
def test_settings() -> Settings:
    """Settings with short intervals and deterministic retry delays."""
    return Settings(
        environment="development",
        job_concurrency=2,
        job_poll_interval_ms=20,
        job_heartbeat_interval_s=0.1,
        job_worker_timeout_s=60,
        job_sweep_interval_s=0.1,
        job_cancel_check_interval_ms=20,
        job_shutdown_grace_s=2,
        job_backoff_base_ms=0,
        job_backoff_jitter=0,
        job_no_progress_timeout_s=0,
    )


@pytest.fixture
async def test_engine():
    """Create a test database engine."""
    database_url = _database_url()
    if database_url is None:
        # Skip database tests if no PostgreSQL available
        pytest.skip("No PostgreSQL database available for testing")

    engine = create_async_engine(database_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        for table in TABLES:
            await conn.execute(text(f"DELETE FROM {table}"))

    yield engine

    # Clean up data after each test while preserving schema
    async with engine.begin() as conn:
        for table in TABLES:
            await conn.execute(text(f"DELETE FROM {table}"))
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(test_settings) -> JobStore:
    return JobStore(test_settings)


@pytest.fixture
def retry_policy(test_settings, store) -> RetryPolicy:
    return RetryPolicy(test_settings, store)


@pytest.fixture
def claims(test_settings, store, retry_policy) -> ClaimEngine:
    return ClaimEngine(test_settings, store, retry_policy)


@pytest.fixture
def make_definition(db_session, store):
    """Create (or update) a job definition."""

    async def _make(
        name: str = "sum",
        namespace: str = "default",
        *,
        max_retries: int = 2,
        timeout_seconds: int = 30,
        enabled: bool = True,
        required_role: str | None = None,
        progress_timeout_seconds: int | None = None,
    ):
        definition, _ = await store.upsert_definition(
            db_session,
            name,
            namespace,
            description=None,
            enabled=enabled,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            progress_timeout_seconds=progress_timeout_seconds,
            required_role=required_role,
            schedule=None,
        )
        return definition

    return _make


@pytest.fixture
def make_job(db_session, store):
    """Insert a pending job."""

    async def _make(
        job_name: str = "sum",
        namespace: str = "default",
        *,
        payload: dict | None = None,
        priority: int = 0,
        max_retries: int = 2,
        created_by: str = "alice",
        scheduled_at=None,
        created_at=None,
        progress_timeout_seconds: int | None = None,
    ) -> Job:
        job = Job(
            job_name=job_name,
            namespace=namespace,
            payload=payload or {"a": 2, "b": 3},
            priority=priority,
            max_retries=max_retries,
            progress_timeout_seconds=progress_timeout_seconds,
            retry_count=0,
            created_by=created_by,
            caller_role="authenticated",
            scheduled_at=scheduled_at,
        )
        if created_at is not None:
            job.created_at = created_at
        return await store.insert_pending(db_session, job)

    return _make


@pytest.fixture
def register_worker(db_session, store):
    """Register a live worker, optionally with an old heartbeat."""

    async def _register(worker_id: str, heartbeat_at=None) -> str:
        await store.register_worker(db_session, worker_id, "test-host", 2)
        if heartbeat_at is not None:
            await db_session.execute(
                update(Worker)
                .where(Worker.worker_id == worker_id)
                .values(last_heartbeat_at=heartbeat_at)
            )
            await db_session.commit()
        return worker_id

    return _register


class PrincipalHolder:
    """Mutable principal used by the app's auth override."""

    def __init__(self):
        self.current: Principal | None = Principal(user_id="alice")

    def use(self, user_id: str, role: str = "authenticated", email: str | None = None):
        self.current = Principal(user_id=user_id, role=role, email=email)


@pytest.fixture
def principal() -> PrincipalHolder:
    return PrincipalHolder()


@pytest.fixture
def app(session_factory, test_settings, principal):
    """Create a test FastAPI application with test database."""
    app = create_app()

    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_principal] = lambda: principal.current

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def now():
    return utcnow()
