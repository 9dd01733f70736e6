"""Tests for push device registration endpoints."""

from __future__ import annotations

import pytest

from conftest import USER_A, USER_B
from genpipe.api.dependencies import CurrentUser, get_current_user
from genpipe.database import get_db
from genpipe.services.device_service import list_active_devices


@pytest.fixture
def api(session_factory):
    from genpipe.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    def install(user_id=USER_A):
        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_current_user] = lambda: CurrentUser(user_id=user_id)

    return install


@pytest.mark.asyncio
async def test_register_and_delete_device(client, api, session_factory):
    api()

    created = await client.post("/api/v1/devices", json={"token": "fcm-token-1", "platform": "android"})
    assert created.status_code == 201
    assert created.json() == {"token": "fcm-token-1", "platform": "android", "is_active": True}

    deleted = await client.delete("/api/v1/devices/fcm-token-1")
    again = await client.delete("/api/v1/devices/fcm-token-1")

    assert deleted.status_code == 204
    assert again.status_code == 404
    async with session_factory() as db:
        assert await list_active_devices(db, USER_A) == []


@pytest.mark.asyncio
async def test_register_rejects_unknown_platform(client, api):
    api()
    resp = await client.post("/api/v1/devices", json={"token": "t", "platform": "blackberry"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_cannot_delete_another_users_device(client, api):
    api(USER_A)
    await client.post("/api/v1/devices", json={"token": "shared-phone", "platform": "ios"})

    api(USER_B)
    resp = await client.delete("/api/v1/devices/shared-phone")
    assert resp.status_code == 404
