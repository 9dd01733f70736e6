"""Push device registry."""

from __future__ import annotations

import uuid

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genpipe.models import DeviceRegistration
from genpipe.models.base import utcnow

log = structlog.get_logger()


class RegisterDeviceRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)
    platform: str = Field(..., pattern="^(ios|android|web)$")


class DeviceResponse(BaseModel):
    token: str
    platform: str
    is_active: bool


async def register_device(
    db: AsyncSession, user_id: uuid.UUID, token: str, platform: str,
) -> DeviceRegistration:
    """Register *token* for *user_id*, re-activating or re-assigning it if known.

    A token belongs to exactly one user; registering it again moves it to
    the caller (the device changed hands or the user re-logged in).
    """
    result = await db.execute(
        select(DeviceRegistration).where(DeviceRegistration.token == token)
    )
    device = result.scalar_one_or_none()
    now = utcnow()
    if device is None:
        device = DeviceRegistration(
            user_id=user_id,
            token=token,
            platform=platform,
            is_active=True,
            created_at=now,
            last_seen_at=now,
        )
        db.add(device)
    else:
        device.user_id = user_id
        device.platform = platform
        device.is_active = True
        device.last_seen_at = now
    await db.flush()
    log.info("device_registered", user_id=str(user_id), platform=platform)
    return device


async def unregister_device(db: AsyncSession, user_id: uuid.UUID, token: str) -> bool:
    """Deactivate the caller's registration for *token*."""
    return await _deactivate(db, token, user_id=user_id)


async def deactivate_token(db: AsyncSession, token: str) -> bool:
    """Deactivate *token* regardless of owner (push provider rejected it)."""
    return await _deactivate(db, token)


async def list_active_devices(db: AsyncSession, user_id: uuid.UUID) -> list[DeviceRegistration]:
    result = await db.execute(
        select(DeviceRegistration).where(
            DeviceRegistration.user_id == user_id,
            DeviceRegistration.is_active.is_(True),
        )
    )
    return list(result.scalars().all())


async def _deactivate(
    db: AsyncSession, token: str, user_id: uuid.UUID | None = None,
) -> bool:
    stmt = update(DeviceRegistration).where(
        DeviceRegistration.token == token,
        DeviceRegistration.is_active.is_(True),
    )
    if user_id is not None:
        stmt = stmt.where(DeviceRegistration.user_id == user_id)
    result = await db.execute(
        stmt.values(is_active=False)
        .returning(DeviceRegistration.device_id)
        .execution_options(synchronize_session=False)
    )
    return result.first() is not None
