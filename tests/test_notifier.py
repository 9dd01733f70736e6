"""Tests for terminal-state notification: realtime publish and push fan-out."""

from __future__ import annotations

import json
import uuid
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from conftest import USER_A, USER_B
from genpipe.integrations.fcm_client import DELIVERED, ERROR, INVALID_TOKEN, PushResult
from genpipe.models import DeviceRegistration
from genpipe.services.device_service import list_active_devices, register_device, unregister_device
from genpipe.services.generation_store import AppliedTransition
from genpipe.services.notifier import Notifier, build_event, build_push_message, user_channel


def _transition(state="completed", reservation_id=None, **overrides) -> AppliedTransition:
    data = dict(
        generation_id=uuid.UUID("11111111-1111-1111-1111-111111111111"),
        user_id=USER_A,
        reservation_id=reservation_id,
        kind="image",
        model="flux-dev",
        state=state,
        output="https://cdn/out.png" if state == "completed" else None,
        thumbnail_url="https://cdn/thumb.png" if state == "completed" else None,
        failure_reason="provider-failed" if state == "failed" else None,
    )
    data.update(overrides)
    return AppliedTransition(**data)


class FakePushClient:
    def __init__(self, outcomes: dict[str, PushResult] | None = None) -> None:
        self.outcomes = outcomes or {}
        self.sent: list[tuple] = []

    async def send(self, token, title, body, data=None, image_url=None) -> PushResult:
        self.sent.append((token, title, body, data, image_url))
        outcome = self.outcomes.get(token, PushResult(DELIVERED))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def _register(session_factory, user_id, token, platform="android"):
    async with session_factory() as db:
        await register_device(db, user_id, token, platform)
        await db.commit()


# ---------------------------------------------------------------------------
# Event and message shapes
# ---------------------------------------------------------------------------

def test_build_event_for_completed():
    event = build_event(_transition())
    assert event == {
        "event": "completed",
        "generation_id": "11111111-1111-1111-1111-111111111111",
        "kind": "image",
        "model": "flux-dev",
        "state": "completed",
        "output": "https://cdn/out.png",
        "thumbnail_url": "https://cdn/thumb.png",
        "reason": None,
    }


def test_push_message_mentions_refund_only_when_credits_were_held():
    refunded = build_push_message(_transition("failed", reservation_id=uuid.uuid4()))
    unmetered = build_push_message(_transition("failed"))
    done = build_push_message(_transition())

    assert refunded == ("Your image generation failed", "Your credits have been refunded.")
    assert "refunded" not in unmetered[1]
    assert done[0] == "Your image is ready"


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_publishes_to_user_channel(session_factory):
    redis = AsyncMock()
    notifier = Notifier(redis, None, session_factory)

    await notifier.notify_terminal(_transition())

    redis.publish.assert_awaited_once()
    channel, message = redis.publish.await_args.args
    assert channel == user_channel(USER_A) == f"generations:{USER_A}"
    assert json.loads(message)["output"] == "https://cdn/out.png"


@pytest.mark.asyncio
async def test_pushes_to_every_active_device(session_factory):
    await _register(session_factory, USER_A, "phone", "ios")
    await _register(session_factory, USER_A, "tablet", "android")
    await _register(session_factory, USER_B, "someone-else")
    push = FakePushClient()

    await Notifier(AsyncMock(), push, session_factory).notify_terminal(_transition())

    assert sorted(sent[0] for sent in push.sent) == ["phone", "tablet"]
    token, title, body, data, image = push.sent[0]
    assert data["state"] == "completed"
    assert image == "https://cdn/thumb.png"


@pytest.mark.asyncio
async def test_invalid_token_is_deactivated_and_audited(session_factory):
    await _register(session_factory, USER_A, "stale-token")
    await _register(session_factory, USER_A, "good-token")
    push = FakePushClient({"stale-token": PushResult(INVALID_TOKEN, "NotRegistered")})

    with patch("genpipe.services.audit_logger.log") as mock_log:
        await Notifier(None, push, session_factory).notify_terminal(_transition("failed"))

    async with session_factory() as db:
        active = await list_active_devices(db, USER_A)
    assert [d.token for d in active] == ["good-token"]
    mock_log.info.assert_called_once()
    assert mock_log.info.call_args[1]["event_type"] == "device_deactivated"


@pytest.mark.asyncio
async def test_failures_never_propagate(session_factory):
    await _register(session_factory, USER_A, "exploding")
    await _register(session_factory, USER_A, "flaky")
    redis = AsyncMock()
    redis.publish.side_effect = ConnectionError("redis down")
    push = FakePushClient({
        "exploding": RuntimeError("socket closed"),
        "flaky": PushResult(ERROR, "Unavailable"),
    })

    await Notifier(redis, push, session_factory).notify_terminal(_transition())

    assert len(push.sent) == 2
    async with session_factory() as db:
        assert len(await list_active_devices(db, USER_A)) == 2


@pytest.mark.asyncio
async def test_no_devices_means_no_push(session_factory):
    push = FakePushClient()
    await Notifier(None, push, session_factory).notify_terminal(_transition())
    assert push.sent == []


# ---------------------------------------------------------------------------
# Device registry
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_register_device_reassigns_token(session_factory):
    await _register(session_factory, USER_A, "shared", "ios")
    await _register(session_factory, USER_B, "shared", "ios")

    async with session_factory() as db:
        rows = (await db.execute(select(DeviceRegistration))).scalars().all()
    assert len(rows) == 1
    assert rows[0].user_id == USER_B


@pytest.mark.asyncio
async def test_unregister_only_own_device(session_factory):
    await _register(session_factory, USER_A, "mine")

    async with session_factory() as db:
        assert await unregister_device(db, USER_B, "mine") is False
        assert await unregister_device(db, USER_A, "mine") is True
        await db.commit()

    async with session_factory() as db:
        assert await list_active_devices(db, USER_A) == []
