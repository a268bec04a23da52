"""pytest fixtures for genflow tests.

Provides:
- postgres_container: Session-scoped PostgreSQL with Alembic migrations applied
- utc_timezone: Autouse fixture enforcing UTC timezone
- settings: Test Settings pointing at a per-test SQLite file
- session_factory / session / uow_factory: Job store with tables created
- fake_adapter: Scripted provider adapter (submit/poll/callback)
- publisher / events: Real EventPublisher with a recording connection
- storage / download_transport: Local asset storage and a mock CDN
"""

import asyncio
import json
import os
import subprocess
import sys
from pathlib import Path
from typing import Any, AsyncGenerator
from uuid import UUID

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession
from testcontainers.postgres import PostgresContainer

from genflow.core.config import Settings
from genflow.core.database import init_models, setup_db_session
from genflow.engine import GenerationEngine
from genflow.models.job import AssetDescriptor, ProviderKind
from genflow.services.events import EventPublisher
from genflow.services.exceptions import InvalidParams, MalformedNotification
from genflow.services.jobs import JobService
from genflow.services.providers.base import RawNotification, RemoteState, RemoteStatus
from genflow.services.storage import LocalAssetStorage
from genflow.uow import create_uow_factory

OWNER = "alice"
PROJECT_ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture(scope="session")
def postgres_container():
    """Provide session-scoped PostgreSQL container with migrations applied.

    Container starts once per test session and is reused by every PostgreSQL
    test. Migrations run in a subprocess to avoid asyncio event loop conflicts.
    Tests depending on it are skipped when no Docker daemon is reachable.
    """
    try:
        container = PostgresContainer(
            image="postgres:17",
            username="test",
            password="test",
            dbname="test_genflow",
        )
        container.start()
    except Exception as e:
        pytest.skip(f"PostgreSQL container unavailable: {e}")

    try:
        db_url = container.get_connection_url(driver="psycopg")
        env = os.environ.copy()
        env["DATABASE_URL"] = db_url
        subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            check=True,
            capture_output=True,
            text=True,
            env=env,
            cwd=PROJECT_ROOT,
        )
        yield container
    finally:
        container.stop()


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


def make_settings(tmp_path, **overrides: Any) -> Settings:
    """Settings for tests: fast loops, no backoff, SQLite job store."""
    values: dict[str, Any] = {
        "APP_ENV": "test",
        "DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'genflow.db'}",
        "ENABLED_PROVIDERS": "image_a",
        "STORAGE_DIR": str(tmp_path / "assets"),
        "STALENESS_SECONDS": 0,
        "SUBMIT_MAX_ATTEMPTS": 3,
        "SUBMIT_BACKOFF_BASE_SECONDS": 0,
        "PROVIDER_TIMEOUT_SECONDS": 2,
        "ASSET_DOWNLOAD_ATTEMPTS": 2,
        "ASSET_BACKOFF_BASE_SECONDS": 0,
        "ASSET_RETRIEVAL_MAX_ROUNDS": 2,
        "RETRIEVAL_INTERVAL_SECONDS": 0,
        "DISPATCH_INTERVAL_SECONDS": 0.05,
        "RECONCILE_INTERVAL_SECONDS": 0.05,
        "SHUTDOWN_GRACE_SECONDS": 2,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)  # type: ignore[call-arg]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest_asyncio.fixture
async def session_factory(settings: Settings):
    """Provide a session factory over a fresh SQLite database with all tables."""
    factory = setup_db_session(settings.database_url)
    engine = factory.kw["bind"]
    await init_models(engine)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a function-scoped session; uncommitted changes are rolled back."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def uow_factory(session_factory):
    return create_uow_factory(session_factory)


def status_from_payload(payload: dict[str, Any]) -> RemoteStatus:
    """Decode the fake provider's status document."""
    state = RemoteState(payload["state"])
    assets = [AssetDescriptor(url=url, content_type="image/png") for url in payload.get("urls", [])]
    return RemoteStatus(
        remote_id=payload["id"],
        state=state,
        assets=assets,
        failure_reason=payload.get("reason"),
        progress=payload.get("progress"),
    )


class FakeAdapter:
    """Provider adapter driven by scripted results.

    submit_results / poll_results hold values to return, or exceptions to raise,
    in order. Callbacks are accepted when the X-Test-Auth header is "ok".
    """

    def __init__(self, kind: ProviderKind = ProviderKind.IMAGE_A, cost: int = 10):
        self.kind = kind
        self.cost = cost
        self.submit_results: list[Any] = []
        self.poll_results: dict[str, list[Any]] = {}
        self.submitted: list[dict[str, Any]] = []
        self.polled: list[str] = []
        self.submit_delay = 0.0

    def validate_params(self, params: dict[str, Any]) -> dict[str, Any]:
        if not params.get("prompt"):
            raise InvalidParams("prompt is required")
        return dict(params)

    def cost_units(self, params: dict[str, Any]) -> int:
        return self.cost

    async def submit(self, params: dict[str, Any]) -> str:
        self.submitted.append(params)
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        result = self.submit_results.pop(0) if self.submit_results else f"remote-{len(self.submitted)}"
        if isinstance(result, Exception):
            raise result
        return result

    async def poll(self, remote_id: str) -> RemoteStatus:
        self.polled.append(remote_id)
        scripted = self.poll_results.get(remote_id) or []
        result = scripted.pop(0) if scripted else RemoteStatus(remote_id, RemoteState.IN_PROGRESS)
        if isinstance(result, Exception):
            raise result
        return result

    def parse_notification(self, raw: RawNotification) -> RemoteStatus:
        if raw.header("x-test-auth") != "ok":
            raise MalformedNotification("missing test auth header")
        try:
            return status_from_payload(json.loads(raw.body))
        except (ValueError, KeyError) as e:
            raise MalformedNotification(str(e)) from e


def notification(payload: dict[str, Any], authenticated: bool = True) -> RawNotification:
    headers = {"X-Test-Auth": "ok"} if authenticated else {}
    return RawNotification(body=json.dumps(payload).encode(), headers=headers)


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


class RecordingConnection:
    """Event connection that keeps every message it is sent."""

    def __init__(self, fail: bool = False):
        self.messages: list[dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise ConnectionError("client went away")
        self.messages.append(data)


@pytest.fixture
def publisher() -> EventPublisher:
    return EventPublisher(send_timeout=1.0)


@pytest.fixture
def events(publisher: EventPublisher) -> list[dict[str, Any]]:
    """Messages delivered to a live connection of OWNER."""
    connection = RecordingConnection()
    publisher.connect(OWNER, connection)
    return connection.messages


@pytest.fixture
def storage(tmp_path) -> LocalAssetStorage:
    return LocalAssetStorage(tmp_path / "assets", "/static/generated")


def cdn_handler(request: httpx.Request) -> httpx.Response:
    """Mock CDN: paths containing "broken" fail, everything else serves bytes."""
    if "broken" in request.url.path:
        return httpx.Response(500, text="upstream error")
    return httpx.Response(
        200, content=b"\x89PNG fake image bytes", headers={"content-type": "image/png"}
    )


@pytest.fixture
def download_transport() -> httpx.MockTransport:
    return httpx.MockTransport(cdn_handler)


async def fund(uow_factory, owner: str = OWNER, amount: int = 100) -> int:
    async with await uow_factory() as uow:
        return await uow.ledger.deposit(owner, amount, note="test top-up")


async def load_job(uow_factory, job_id: UUID):
    async with await uow_factory() as uow:
        return await uow.jobs.get_by_id(job_id)


async def balance_of(uow_factory, owner: str = OWNER) -> int:
    async with await uow_factory() as uow:
        return await uow.ledger.get_balance(owner)


async def ledger_for(uow_factory, job_id: UUID):
    async with await uow_factory() as uow:
        return await uow.ledger.entries_for_job(job_id)


@pytest.fixture
def job_service(fake_adapter, uow_factory, publisher) -> JobService:
    return JobService({fake_adapter.kind: fake_adapter}, uow_factory, publisher)


@pytest.fixture
def engine(
    fake_adapter, uow_factory, publisher, storage, settings, download_transport
) -> GenerationEngine:
    return GenerationEngine(
        fake_adapter,
        uow_factory,
        publisher,
        storage,
        settings,
        concurrency=2,
        download_transport=download_transport,
    )


async def create_submitted_job(job_service, engine, uow_factory, prompt: str = "a red fox"):
    """Create a job for OWNER (who must be funded) and dispatch it."""
    job_id = await job_service.create_job(OWNER, engine.kind, {"prompt": prompt})
    remote_id = await engine.dispatcher.dispatch(await load_job(uow_factory, job_id))
    return job_id, remote_id
