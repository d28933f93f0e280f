"""pytest fixtures for genbatch tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- session_factory: Function-scoped SQLite (aiosqlite) database with all tables created
- uow_factory: Function-scoped UnitOfWork factory
- job_store: JobStore backed by an in-memory fake redis
- fake_provider / fake_task_provider: Scripted generation providers
- test_settings / test_app / test_client: Application wired to the fixtures above
"""

import os

# Must be set before genbatch.app is imported (it builds Settings at import time)
os.environ.setdefault("APP_ENV", "test")
os.environ["TZ"] = "UTC"

import asyncio  # noqa: E402
from typing import AsyncGenerator, Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fakeredis import aioredis as fake_aioredis  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

import genbatch.models  # noqa: E402,F401
from genbatch.core.config import Settings  # noqa: E402
from genbatch.core.database import setup_db_session  # noqa: E402
from genbatch.models.batch import MediaResult  # noqa: E402
from genbatch.models.generation import GenerationConfig  # noqa: E402
from genbatch.repositories.job_store import JobStore  # noqa: E402
from genbatch.services.exceptions import (  # noqa: E402
    ConfigurationError,
    ProviderRejectedError,
    ProviderTransientError,
)
from genbatch.services.providers.base import (  # noqa: E402
    OnStatusUpdate,
    ProviderResult,
    TaskState,
    TaskStatus,
)
from genbatch.uow import create_uow_factory  # noqa: E402

PUBLIC_BASE_URL = "http://test"
CURRENT_SIGNING_KEY = "sig_current_test_key"
NEXT_SIGNING_KEY = "sig_next_test_key"


class FakeProvider:
    """Generation provider with scripted outcomes.

    Prompts containing "fail" are rejected, prompts containing "flaky" raise a
    transient error. Every other prompt succeeds after ``delay`` seconds.
    """

    name = "fake"

    def __init__(self, delay: float = 0.0, configured: bool = True):
        self.delay = delay
        self.configured = configured
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    def ensure_configured(self) -> None:
        if not self.configured:
            raise ConfigurationError("FAKE_API_KEY not configured")

    async def generate(
        self,
        prompt: str,
        config: GenerationConfig,
        on_status: Optional[OnStatusUpdate] = None,
    ) -> ProviderResult:
        self.calls.append(prompt)
        call_number = len(self.calls)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if on_status is not None:
                await on_status("processing")
            await asyncio.sleep(self.delay)
            if "fail" in prompt:
                raise ProviderRejectedError(f"Generation failed: {prompt}")
            if "flaky" in prompt:
                raise ProviderTransientError("Rate limit exceeded: 429")
            return ProviderResult(
                media=[MediaResult(url=f"https://cdn.test/{call_number}.png")],
                seed=42,
                request_id=f"req-{call_number}",
            )
        finally:
            self.active -= 1

    async def edit(
        self,
        prompt: str,
        source_urls: list[str],
        config: GenerationConfig,
        on_status: Optional[OnStatusUpdate] = None,
    ) -> ProviderResult:
        return await self.generate(prompt, config, on_status)


class FakeTaskProvider:
    """Long-running task provider: each task succeeds after ``polls_to_finish`` polls.

    Tasks whose prompt contains "fail" end in the fail state instead.
    """

    name = "fake-video"

    def __init__(self, polls_to_finish: int = 2):
        self.polls_to_finish = polls_to_finish
        self.inputs: dict[str, dict] = {}
        self.poll_counts: dict[str, int] = {}
        self.finished: set[str] = set()
        self.max_open = 0
        self.create_errors: list[Exception] = []

    @property
    def open_tasks(self) -> int:
        return len(self.inputs) - len(self.finished)

    def ensure_configured(self) -> None:
        pass

    async def create_task(self, input: dict, model: Optional[str] = None) -> str:
        if self.create_errors:
            raise self.create_errors.pop(0)
        task_id = f"task-{len(self.inputs)}"
        self.inputs[task_id] = input
        self.poll_counts[task_id] = 0
        self.max_open = max(self.max_open, self.open_tasks)
        return task_id

    async def poll_task(self, task_id: str) -> TaskStatus:
        self.poll_counts[task_id] += 1
        if self.poll_counts[task_id] < self.polls_to_finish:
            return TaskStatus(task_id=task_id, state=TaskState.GENERATING)
        self.finished.add(task_id)
        if "fail" in self.inputs[task_id]["prompt"]:
            return TaskStatus(task_id=task_id, state=TaskState.FAIL, error="Motion rejected")
        return TaskStatus(
            task_id=task_id,
            state=TaskState.SUCCESS,
            result_url=f"https://cdn.test/{task_id}.mp4",
        )

    async def poll_tasks(self, task_ids: list[str]) -> list[TaskStatus]:
        return [await self.poll_task(task_id) for task_id in task_ids]

    async def aclose(self) -> None:
        pass


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Provide a session factory bound to a fresh SQLite database with all tables."""
    factory = setup_db_session(f"sqlite+aiosqlite:///{tmp_path / 'genbatch.db'}")
    engine = factory.kw["bind"]

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest_asyncio.fixture(scope="function")
async def redis_client():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()


@pytest_asyncio.fixture(scope="function")
async def job_store(redis_client) -> JobStore:
    return JobStore(redis_client, ttl_seconds=3600)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def fake_task_provider() -> FakeTaskProvider:
    return FakeTaskProvider()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(  # type: ignore[call-arg]
        APP_ENV="test",
        DATABASE_URL="sqlite+aiosqlite://",
        DEFAULT_PROVIDER="replicate",
        MAX_CONCURRENCY=4,
        QSTASH_TOKEN="qstash_test_token",
        QSTASH_CURRENT_SIGNING_KEY=CURRENT_SIGNING_KEY,
        QSTASH_NEXT_SIGNING_KEY=NEXT_SIGNING_KEY,
        QSTASH_RETRIES=3,
        PUBLIC_BASE_URL=PUBLIC_BASE_URL,
        PINATA_JWT="",
        VIDEO_SLOTS=2,
        VIDEO_POLL_INTERVAL_SECONDS=0.01,
        USD_TO_ILS=1.0,
    )


@pytest_asyncio.fixture(scope="function")
async def test_app(test_settings, session_factory, job_store, fake_provider, fake_task_provider):
    """Application with state wired to the test database, fake redis and fake providers.

    ASGITransport does not run the lifespan, so state is initialized here.
    """
    from genbatch.app import create_app, init_app_state

    app = create_app(test_settings)
    init_app_state(app, test_settings, session_factory, job_store)
    app.state.providers = {"replicate": fake_provider, "kie": fake_provider}
    app.state.video_provider = fake_task_provider

    yield app

    for poller in list(app.state.video_pollers.values()):
        await poller.stop()
    if app.state.background_tasks:
        await asyncio.gather(*app.state.background_tasks, return_exceptions=True)


@pytest_asyncio.fixture(scope="function")
async def test_client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """Provide AsyncClient for testing API endpoints."""
    async with AsyncClient(
        transport=ASGITransport(app=test_app), base_url=PUBLIC_BASE_URL
    ) as client:
        yield client
