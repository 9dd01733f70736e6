"""Push device registration endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from genpipe.api.dependencies import CurrentUser, get_current_user
from genpipe.database import get_db
from genpipe.services.device_service import (
    DeviceResponse,
    RegisterDeviceRequest,
    register_device,
    unregister_device,
)

router = APIRouter(prefix="/api/v1/devices", tags=["devices"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=DeviceResponse)
async def create_device(
    body: RegisterDeviceRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Register (or refresh) a push token for the caller."""
    device = await register_device(db, current_user.user_id, body.token, body.platform)
    await db.commit()
    return DeviceResponse(token=device.token, platform=device.platform, is_active=device.is_active)


@router.delete("/{token}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_device(
    token: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Stop sending pushes to *token*."""
    if not await unregister_device(db, current_user.user_id, token):
        raise HTTPException(status_code=404, detail="Device not found")
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
