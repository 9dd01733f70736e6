"""Tests for the reconciliation sweeper.

Records are created "now"; each sweep is run with a ``now`` shifted into
the future so grace periods and per-kind timeouts can be crossed without
sleeping.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import USER_A, fund, image_spec
from genpipe.integrations.providers.base import PollResult, ProviderTransientError
from genpipe.models import CreditAccount, GenerationRecord, Reservation
from genpipe.models.base import utcnow
from genpipe.services.catalog import GenerationRequest, build_job_spec
from genpipe.services.reconciliation_sweeper import ReconciliationSweeper


@pytest.fixture
def sweeper(session_factory, orchestrator, providers, test_settings):
    return ReconciliationSweeper(session_factory, orchestrator, providers, test_settings)


def later(seconds: int):
    return utcnow() + timedelta(seconds=seconds)


async def _record(session_factory, generation_id) -> GenerationRecord:
    async with session_factory() as db:
        result = await db.execute(
            select(GenerationRecord).where(GenerationRecord.generation_id == generation_id)
        )
        return result.scalar_one()


async def _account(session_factory) -> CreditAccount:
    async with session_factory() as db:
        result = await db.execute(select(CreditAccount).where(CreditAccount.user_id == USER_A))
        return result.scalar_one()


async def _reservation_state(session_factory, reservation_id) -> str:
    async with session_factory() as db:
        result = await db.execute(
            select(Reservation.state).where(Reservation.reservation_id == reservation_id)
        )
        return result.scalar_one()


async def _processing(orchestrator, session_factory, spec=None):
    """Admit and dispatch a job without running the poll loop."""
    spec = spec or image_spec()
    await fund(session_factory, USER_A, 50)
    record, _ = await orchestrator.admit(USER_A, spec)
    await orchestrator.dispatch(record.generation_id, spec)
    return record


@pytest.mark.asyncio
async def test_pending_without_task_is_dispatch_interrupted(sweeper, orchestrator, session_factory):
    await fund(session_factory, USER_A, 50)
    record, _ = await orchestrator.admit(USER_A, image_spec())

    report = await sweeper.sweep_once(now=later(120))

    assert report.examined == 1
    assert report.interrupted == 1
    stored = await _record(session_factory, record.generation_id)
    assert stored.state == "failed"
    assert stored.failure_reason == "dispatch-interrupted"
    assert await _reservation_state(session_factory, stored.reservation_id) == "released"
    assert (await _account(session_factory)).available == 50


@pytest.mark.asyncio
async def test_recovers_completed_job_and_commits_once(sweeper, orchestrator, session_factory, fal, notifier):
    record = await _processing(orchestrator, session_factory)
    fal.poll_results = [PollResult.completed("https://cdn/recovered.png")]

    first = await sweeper.sweep_once(now=later(120))
    second = await sweeper.sweep_once(now=later(180))
    await orchestrator.drain()

    assert first.completed == 1
    assert second.examined == 0
    stored = await _record(session_factory, record.generation_id)
    assert stored.state == "completed"
    assert stored.output == "https://cdn/recovered.png"
    assert stored.poll_attempts == 1
    account = await _account(session_factory)
    assert (account.balance, account.reserved) == (46, 0)
    assert len(notifier.transitions) == 1


@pytest.mark.asyncio
async def test_recovers_failed_job(sweeper, orchestrator, session_factory, fal):
    record = await _processing(orchestrator, session_factory)
    fal.poll_results = [PollResult.failed("upstream crashed")]

    report = await sweeper.sweep_once(now=later(120))

    assert report.failed == 1
    stored = await _record(session_factory, record.generation_id)
    assert stored.failure_reason == "provider-failed"
    assert (await _account(session_factory)).available == 50


@pytest.mark.asyncio
async def test_running_job_within_timeout_is_left_alone(sweeper, orchestrator, session_factory, fal):
    record = await _processing(orchestrator, session_factory)
    fal.poll_results = [PollResult.running()]

    report = await sweeper.sweep_once(now=later(300))

    assert report.still_running == 1
    stored = await _record(session_factory, record.generation_id)
    assert stored.state == "processing"
    assert stored.poll_attempts == 1
    assert (await _account(session_factory)).reserved == 4


@pytest.mark.asyncio
async def test_running_job_past_timeout_is_failed(sweeper, orchestrator, session_factory, fal):
    record = await _processing(orchestrator, session_factory)
    fal.poll_results = [PollResult.running()]

    report = await sweeper.sweep_once(now=later(700))

    assert report.timed_out == 1
    stored = await _record(session_factory, record.generation_id)
    assert stored.state == "failed"
    assert stored.failure_reason == "timeout"
    assert await _reservation_state(session_factory, stored.reservation_id) == "released"
    account = await _account(session_factory)
    assert (account.balance, account.reserved) == (50, 0)


@pytest.mark.asyncio
async def test_success_past_timeout_still_completes(sweeper, orchestrator, session_factory, fal):
    record = await _processing(orchestrator, session_factory)
    fal.poll_results = [PollResult.completed("https://cdn/slow.png")]

    report = await sweeper.sweep_once(now=later(5000))

    assert report.completed == 1
    assert report.timed_out == 0
    assert (await _record(session_factory, record.generation_id)).state == "completed"
    assert (await _account(session_factory)).balance == 46


@pytest.mark.asyncio
async def test_unreachable_provider_past_timeout_is_failed(sweeper, orchestrator, session_factory, fal):
    record = await _processing(orchestrator, session_factory)
    fal.poll_results = [ProviderTransientError("connection reset")]

    within = await sweeper.sweep_once(now=later(120))
    past = await sweeper.sweep_once(now=later(700))

    assert within.still_running == 1
    assert past.timed_out == 1
    assert (await _record(session_factory, record.generation_id)).failure_reason == "timeout"


@pytest.mark.asyncio
async def test_timeout_depends_on_kind(sweeper, orchestrator, session_factory, fal):
    video = build_job_spec(GenerationRequest(kind="video", model="wan-2.6", prompt="waves"))
    record = await _processing(orchestrator, session_factory, spec=video)
    fal.poll_results = [PollResult.running()]

    at_700 = await sweeper.sweep_once(now=later(700))
    at_1300 = await sweeper.sweep_once(now=later(1300))

    assert at_700.still_running == 1
    assert at_1300.timed_out == 1
    assert (await _record(session_factory, record.generation_id)).state == "failed"


@pytest.mark.asyncio
async def test_records_within_grace_are_not_examined(sweeper, orchestrator, session_factory, fal):
    await _processing(orchestrator, session_factory)

    report = await sweeper.sweep_once(now=later(30))

    assert report.examined == 0
    assert fal.polled == []


@pytest.mark.asyncio
async def test_record_finished_by_callback_mid_sweep(sweeper, orchestrator, session_factory, fal):
    """A webhook that lands first wins; the sweeper's transition is a no-op."""
    record = await _processing(orchestrator, session_factory)

    async def poll_after_callback(ref):
        await orchestrator.handle_callback(
            "fal", {"task_id": ref.task_id, "status": "done", "output": "https://cdn/hook.png"},
        )
        return PollResult.failed("stale view")

    fal.poll = poll_after_callback

    report = await sweeper.sweep_once(now=later(700))

    assert report.failed == 0
    assert report.timed_out == 0
    stored = await _record(session_factory, record.generation_id)
    assert stored.state == "completed"
    assert (await _account(session_factory)).balance == 46


@pytest.mark.asyncio
async def test_start_and_stop(sweeper):
    await sweeper.start()
    assert sweeper.running is True
    await sweeper.start()

    await sweeper.stop()
    assert sweeper.running is False


@pytest.mark.asyncio
async def test_one_broken_record_does_not_stop_the_batch(sweeper, orchestrator, session_factory, fal, kie):
    broken = await _processing(orchestrator, session_factory)
    music = build_job_spec(GenerationRequest(kind="music", model="kie-music-v4", prompt="lofi rain"))
    healthy = await _processing(orchestrator, session_factory, spec=music)
    fal.poll_results = [AttributeError("'list' object has no attribute 'get'")]
    kie.poll_results = [PollResult.completed("https://cdn/track.mp3")]

    report = await sweeper.sweep_once(now=later(120))

    assert report.examined == 2
    assert report.errors == 1
    assert report.completed == 1
    assert (await _record(session_factory, broken.generation_id)).state == "processing"
    assert (await _record(session_factory, healthy.generation_id)).state == "completed"


@pytest.mark.asyncio
async def test_loop_keeps_running_after_unexpected_error(session_factory, orchestrator, providers, test_settings):
    settings = test_settings.model_copy(update={"SWEEPER_INTERVAL_SECONDS": 0})
    sweeper = ReconciliationSweeper(session_factory, orchestrator, providers, settings)
    passes = []

    async def flaky_sweep(now=None):
        passes.append(now)
        if len(passes) == 1:
            raise RuntimeError("adapter blew up")

    sweeper.sweep_once = flaky_sweep
    await sweeper.start()
    for _ in range(100):
        if len(passes) >= 3:
            break
        await asyncio.sleep(0.01)

    assert len(passes) >= 3
    assert sweeper.running is True
    assert not sweeper._task.done()
    await sweeper.stop()
