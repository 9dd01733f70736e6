"""Entitlement checks -- subscribers bypass credit accounting entirely.

The ``subscriptions`` table is written by the billing side; this service only
reads it.  ``active`` and ``trialing`` subscriptions grant unlimited use until
``current_period_end`` (when set).
"""

from __future__ import annotations

import uuid

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from genpipe.models import Subscription
from genpipe.models.base import utcnow

UNLIMITED_STATUSES = ("active", "trialing")


async def has_unlimited_entitlement(db: AsyncSession, user_id: uuid.UUID) -> bool:
    """Return True if *user_id* currently holds an unlimited-use subscription."""
    result = await db.execute(
        select(Subscription.user_id).where(
            Subscription.user_id == user_id,
            Subscription.status.in_(UNLIMITED_STATUSES),
            or_(
                Subscription.current_period_end.is_(None),
                Subscription.current_period_end > utcnow(),
            ),
        )
    )
    return result.first() is not None
