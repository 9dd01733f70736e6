"""Credit account, reservation, journal, and entitlement models."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from genpipe.models.base import Base, BigIntPK, utcnow

RESERVATION_HELD = "held"
RESERVATION_COMMITTED = "committed"
RESERVATION_RELEASED = "released"
RESERVATION_STATES = (RESERVATION_HELD, RESERVATION_COMMITTED, RESERVATION_RELEASED)

TXN_TYPES = ("grant", "purchase", "spend", "admin_adjustment")


class CreditAccount(Base):
    __tablename__ = "credit_accounts"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_account_balance_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_account_reserved_non_negative"),
        CheckConstraint("reserved <= balance", name="ck_account_reserved_within_balance"),
    )

    @property
    def available(self) -> int:
        return self.balance - self.reserved


class Reservation(Base):
    __tablename__ = "credit_reservations"

    reservation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("credit_accounts.user_id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    state: Mapped[str] = mapped_column(
        String(20), default=RESERVATION_HELD, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    settled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_reservation_amount_positive"),
        CheckConstraint(
            "state IN ('held', 'committed', 'released')",
            name="ck_reservation_state",
        ),
        Index("ix_reservations_user_state", "user_id", "state"),
    )


class CreditTransaction(Base):
    """Append-only journal; the sum of amounts per user equals the balance."""

    __tablename__ = "credit_transactions"

    txn_id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("credit_accounts.user_id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    txn_type: Mapped[str] = mapped_column(String(30), nullable=False)
    reference_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "txn_type IN ('grant', 'purchase', 'spend', 'admin_adjustment')",
            name="ck_credit_txn_type",
        ),
    )


class Subscription(Base):
    """Unlimited-use entitlement, maintained by the billing side."""

    __tablename__ = "subscriptions"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
