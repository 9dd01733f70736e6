"""Shared fixtures: a file-backed SQLite database and in-memory fakes.

Each test gets its own SQLite file so concurrent sessions use separate
connections and real write locking, which the ledger and terminal
transition race tests depend on.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from genpipe.config import Settings
from genpipe.integrations.providers.base import (
    CallbackParseError,
    CallbackResult,
    PollResult,
    ProviderRef,
)
from genpipe.integrations.providers.registry import ProviderRegistry
from genpipe.models import Base, Subscription
from genpipe.services import ledger
from genpipe.services.catalog import GenerationRequest, JobSpec, build_job_spec
from genpipe.services.generation_orchestrator import GenerationOrchestrator


USER_A = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
USER_B = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeProvider:
    """Scriptable provider adapter.

    ``poll_results`` is consumed front to back; the last entry repeats.
    Entries may be exceptions, which are raised instead of returned.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.submit_error: Exception | None = None
        self.poll_results: list = []
        self.submitted: list[JobSpec] = []
        self.polled: list[ProviderRef] = []
        self._counter = 0

    async def submit(self, spec: JobSpec) -> ProviderRef:
        self.submitted.append(spec)
        if self.submit_error is not None:
            raise self.submit_error
        self._counter += 1
        return ProviderRef(provider=self.name, task_id=f"{self.name}-task-{self._counter}", model=spec.model.name)

    async def poll(self, ref: ProviderRef) -> PollResult:
        self.polled.append(ref)
        if not self.poll_results:
            return PollResult.running()
        result = self.poll_results.pop(0) if len(self.poll_results) > 1 else self.poll_results[0]
        if isinstance(result, Exception):
            raise result
        return result

    def parse_callback(self, payload) -> CallbackResult:
        if not isinstance(payload, dict) or "task_id" not in payload:
            raise CallbackParseError("missing task_id")
        status = payload.get("status")
        if status == "done":
            return CallbackResult(payload["task_id"], PollResult.completed(payload["output"]))
        if status == "error":
            return CallbackResult(payload["task_id"], PollResult.failed(payload.get("error", "boom")))
        return CallbackResult(payload["task_id"], PollResult.running())


class RecordingNotifier:
    """Collects terminal transitions instead of publishing them."""

    def __init__(self) -> None:
        self.transitions = []

    async def notify_terminal(self, transition) -> None:
        self.transitions.append(transition)


async def no_sleep(_delay: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Pipeline wiring
# ---------------------------------------------------------------------------

@pytest.fixture
def test_settings():
    return Settings(
        POLL_MAX_ATTEMPTS=3,
        POLL_BASE_DELAY=0.01,
        POLL_MAX_DELAY=0.05,
        SWEEPER_GRACE_SECONDS=90,
        SWEEPER_BATCH_SIZE=50,
        TIMEOUT_IMAGE_SECONDS=600,
        TIMEOUT_VIDEO_SECONDS=1200,
        CALLBACK_TOKEN="",
    )


@pytest.fixture
def fal():
    return FakeProvider("fal")


@pytest.fixture
def kie():
    return FakeProvider("kie")


@pytest.fixture
def providers(fal, kie):
    return ProviderRegistry([fal, kie])


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def orchestrator(session_factory, providers, notifier, test_settings):
    return GenerationOrchestrator(
        session_factory, providers, notifier, test_settings, sleep=no_sleep,
    )


@pytest.fixture
async def client():
    from genpipe.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def image_spec(model: str = "flux-dev", prompt: str = "a red fox in snow", **params) -> JobSpec:
    """flux-dev costs 4 credits."""
    return build_job_spec(
        GenerationRequest(kind="image", model=model, prompt=prompt, parameters=params)
    )


async def fund(session_factory, user_id: uuid.UUID, amount: int) -> None:
    async with session_factory() as db:
        await ledger.grant_credits(db, user_id, amount)
        await db.commit()


async def subscribe(session_factory, user_id: uuid.UUID, status: str = "active") -> None:
    async with session_factory() as db:
        db.add(Subscription(
            user_id=user_id,
            status=status,
            current_period_end=datetime.now(timezone.utc) + timedelta(days=30),
            updated_at=datetime.now(timezone.utc),
        ))
        await db.commit()
