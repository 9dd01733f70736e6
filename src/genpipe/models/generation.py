"""Generation record and push device models."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from genpipe.models.base import Base, BigIntPK, JSONType, utcnow

GENERATION_KINDS = ("image", "video", "music", "text")

STATE_PENDING = "pending"
STATE_PROCESSING = "processing"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"
NON_TERMINAL_STATES = (STATE_PENDING, STATE_PROCESSING)
TERMINAL_STATES = (STATE_COMPLETED, STATE_FAILED)

REASON_SUBMISSION_FAILED = "submission-failed"
REASON_PROVIDER_FAILED = "provider-failed"
REASON_TIMEOUT = "timeout"
REASON_DISPATCH_INTERRUPTED = "dispatch-interrupted"


class GenerationRecord(Base):
    __tablename__ = "generation_records"

    generation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    kind: Mapped[str] = mapped_column(String(10), nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    provider: Mapped[str] = mapped_column(String(30), nullable=False)
    task_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    state: Mapped[str] = mapped_column(
        String(20), default=STATE_PENDING, nullable=False
    )
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    parameters: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    credit_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    reservation_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("credit_reservations.reservation_id"), nullable=True
    )
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    parent_generation_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    thumbnail_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    failure_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancel_requested_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    poll_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_polled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    terminal_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            "state IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_generation_state",
        ),
        CheckConstraint(
            "kind IN ('image', 'video', 'music', 'text')",
            name="ck_generation_kind",
        ),
        CheckConstraint(
            "(state = 'completed') = (output IS NOT NULL)",
            name="ck_generation_output_iff_completed",
        ),
        CheckConstraint(
            "(state = 'failed') = (failure_reason IS NOT NULL)",
            name="ck_generation_reason_iff_failed",
        ),
        UniqueConstraint("provider", "task_id", name="uq_generation_provider_task"),
        UniqueConstraint("user_id", "idempotency_key", name="uq_generation_idempotency"),
        Index("ix_generation_state_created", "state", "created_at"),
        Index("ix_generation_user_created", "user_id", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class DeviceRegistration(Base):
    __tablename__ = "device_registrations"

    device_id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    token: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "platform IN ('ios', 'android', 'web')",
            name="ck_device_platform",
        ),
    )
