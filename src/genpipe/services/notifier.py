"""Terminal-state fan-out: realtime event plus push notification.

Notification only shortens the time until a user sees a result; the
generation record is already durable when ``notify_terminal`` runs.  Nothing
here raises -- every failure is logged and dropped.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genpipe.integrations.fcm_client import INVALID_TOKEN, FcmPushClient
from genpipe.models import GenerationRecord
from genpipe.models.generation import STATE_COMPLETED
from genpipe.services.audit_logger import AuditLogger
from genpipe.services.device_service import deactivate_token, list_active_devices
from genpipe.services.generation_store import AppliedTransition

log = structlog.get_logger()
audit = AuditLogger()


def user_channel(user_id: uuid.UUID) -> str:
    """Redis pub/sub channel carrying one user's generation events."""
    return f"generations:{user_id}"


def build_event(transition: AppliedTransition) -> dict[str, Any]:
    return {
        "event": transition.state,
        "generation_id": str(transition.generation_id),
        "kind": transition.kind,
        "model": transition.model,
        "state": transition.state,
        "output": transition.output,
        "thumbnail_url": transition.thumbnail_url,
        "reason": transition.failure_reason,
    }


def build_record_event(record: GenerationRecord) -> dict[str, Any]:
    """Same event shape as ``build_event``, read back from a stored record."""
    return {
        "event": record.state,
        "generation_id": str(record.generation_id),
        "kind": record.kind,
        "model": record.model,
        "state": record.state,
        "output": record.output,
        "thumbnail_url": record.thumbnail_url,
        "reason": record.failure_reason,
    }


def build_push_message(transition: AppliedTransition) -> tuple[str, str]:
    """Return the push ``(title, body)`` for a terminal transition."""
    kind = transition.kind
    if transition.state == STATE_COMPLETED:
        return f"Your {kind} is ready", "Tap to view your new creation."
    if transition.reservation_id is not None:
        return f"Your {kind} generation failed", "Your credits have been refunded."
    return f"Your {kind} generation failed", "Please try again."


class Notifier:
    """Publishes terminal transitions to realtime subscribers and devices."""

    def __init__(
        self,
        redis: Any,
        push_client: FcmPushClient | None,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self._redis = redis
        self._push = push_client
        self._session_factory = session_factory

    async def notify_terminal(self, transition: AppliedTransition) -> None:
        """Attempt exactly one realtime publish and one push fan-out."""
        await self._publish(transition)
        await self._push_to_devices(transition)

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------

    async def _publish(self, transition: AppliedTransition) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.publish(
                user_channel(transition.user_id), json.dumps(build_event(transition)),
            )
        except Exception:
            log.warning(
                "realtime_publish_failed",
                generation_id=str(transition.generation_id), exc_info=True,
            )

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def _push_to_devices(self, transition: AppliedTransition) -> None:
        if self._push is None:
            return
        try:
            async with self._session_factory() as db:
                devices = await list_active_devices(db, transition.user_id)
        except Exception:
            log.warning(
                "push_device_lookup_failed",
                generation_id=str(transition.generation_id), exc_info=True,
            )
            return
        if not devices:
            return

        title, body = build_push_message(transition)
        data = {"generation_id": str(transition.generation_id), "state": transition.state}
        image = transition.thumbnail_url if transition.state == STATE_COMPLETED else None

        await asyncio.gather(*(
            self._push_one(transition, device.token, device.platform, title, body, data, image)
            for device in devices
        ))

    async def _push_one(
        self,
        transition: AppliedTransition,
        token: str,
        platform: str,
        title: str,
        body: str,
        data: dict[str, str],
        image: str | None,
    ) -> None:
        try:
            result = await self._push.send(token, title, body, data=data, image_url=image)
            if result.outcome == INVALID_TOKEN:
                async with self._session_factory() as db:
                    await deactivate_token(db, token)
                    await db.commit()
                audit.log_device_deactivated(transition.user_id, platform, result.error or "")
            elif result.error:
                log.info(
                    "push_not_delivered",
                    generation_id=str(transition.generation_id),
                    platform=platform, error=result.error,
                )
        except Exception:
            log.warning(
                "push_send_failed",
                generation_id=str(transition.generation_id), exc_info=True,
            )
