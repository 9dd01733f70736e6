"""Persistence for generation records.

State changes go through guarded UPDATEs only: ``mark_processing`` moves a
record out of ``pending`` and ``transition_terminal`` moves it out of any
non-terminal state.  Whichever caller's UPDATE matches the row wins; every
other caller sees ``None`` and must not settle credits.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genpipe.integrations.providers.base import ProviderRef
from genpipe.models import GenerationRecord
from genpipe.models.base import utcnow
from genpipe.models.generation import (
    NON_TERMINAL_STATES,
    STATE_COMPLETED,
    STATE_FAILED,
    STATE_PENDING,
    STATE_PROCESSING,
)
from genpipe.services.catalog import JobSpec


@dataclass(frozen=True)
class AppliedTransition:
    """Snapshot of a record whose terminal transition this caller applied."""

    generation_id: uuid.UUID
    user_id: uuid.UUID
    reservation_id: uuid.UUID | None
    kind: str
    model: str
    state: str
    output: str | None
    thumbnail_url: str | None
    failure_reason: str | None


class GenerationStore:
    """Encapsulates database operations for generation records.

    Never commits; the caller owns the transaction.
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_pending(
        self,
        user_id: uuid.UUID,
        spec: JobSpec,
        reservation_id: uuid.UUID | None,
        idempotency_key: str | None = None,
    ) -> GenerationRecord:
        """Insert a new record in ``pending``."""
        record = GenerationRecord(
            generation_id=uuid.uuid4(),
            user_id=user_id,
            kind=spec.kind,
            model=spec.model.name,
            provider=spec.model.provider,
            state=STATE_PENDING,
            prompt=spec.prompt,
            parameters=spec.parameters,
            credit_cost=spec.credit_cost,
            reservation_id=reservation_id,
            idempotency_key=idempotency_key,
            poll_attempts=0,
            created_at=utcnow(),
        )
        self._db.add(record)
        await self._db.flush()
        return record

    # ------------------------------------------------------------------
    # Guarded transitions
    # ------------------------------------------------------------------

    async def mark_processing(self, generation_id: uuid.UUID, ref: ProviderRef) -> bool:
        """Record the provider handle and move ``pending -> processing``.

        Returns False if the record had already left ``pending``.
        """
        result = await self._db.execute(
            update(GenerationRecord)
            .where(
                GenerationRecord.generation_id == generation_id,
                GenerationRecord.state == STATE_PENDING,
            )
            .values(
                state=STATE_PROCESSING,
                provider=ref.provider,
                task_id=ref.task_id,
                dispatched_at=utcnow(),
            )
            .returning(GenerationRecord.generation_id)
            .execution_options(synchronize_session=False)
        )
        return result.first() is not None

    async def transition_terminal(
        self,
        generation_id: uuid.UUID,
        state: str,
        output: str | None = None,
        thumbnail_url: str | None = None,
        reason: str | None = None,
        message: str | None = None,
    ) -> AppliedTransition | None:
        """Compare-and-swap a non-terminal record into *state*.

        Returns the applied transition, or None when the record was already
        terminal (or does not exist).  A None result is not an error.
        """
        if state == STATE_COMPLETED:
            if not output:
                raise ValueError("A completed generation requires an output")
            values: dict[str, Any] = {"output": output, "thumbnail_url": thumbnail_url}
            if thumbnail_url is None:
                # images are their own thumbnail
                values["thumbnail_url"] = case(
                    (GenerationRecord.kind == "image", output), else_=None,
                )
        elif state == STATE_FAILED:
            if not reason:
                raise ValueError("A failed generation requires a reason")
            values = {"failure_reason": reason, "failure_message": message}
        else:
            raise ValueError(f"Not a terminal state: {state}")

        result = await self._db.execute(
            update(GenerationRecord)
            .where(
                GenerationRecord.generation_id == generation_id,
                GenerationRecord.state.in_(NON_TERMINAL_STATES),
            )
            .values(state=state, terminal_at=utcnow(), **values)
            .returning(
                GenerationRecord.user_id,
                GenerationRecord.reservation_id,
                GenerationRecord.kind,
                GenerationRecord.model,
                GenerationRecord.thumbnail_url,
            )
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            return None
        return AppliedTransition(
            generation_id=generation_id,
            user_id=row[0],
            reservation_id=row[1],
            kind=row[2],
            model=row[3],
            state=state,
            output=output if state == STATE_COMPLETED else None,
            thumbnail_url=row[4] if state == STATE_COMPLETED else None,
            failure_reason=reason if state == STATE_FAILED else None,
        )

    async def create_variations(
        self, generation_id: uuid.UUID, outputs: tuple[str, ...],
    ) -> list[GenerationRecord]:
        """Store extra artifacts of a completed job as uncharged, completed records."""
        parent = await self.get(generation_id)
        if parent is None or not outputs:
            return []

        now = utcnow()
        records = [
            GenerationRecord(
                generation_id=uuid.uuid4(),
                user_id=parent.user_id,
                kind=parent.kind,
                model=parent.model,
                provider=parent.provider,
                state=STATE_COMPLETED,
                prompt=parent.prompt,
                parameters=parent.parameters,
                credit_cost=0,
                parent_generation_id=generation_id,
                output=output,
                poll_attempts=0,
                created_at=now,
                terminal_at=now,
            )
            for output in outputs
        ]
        self._db.add_all(records)
        await self._db.flush()
        return records

    # ------------------------------------------------------------------
    # Non-state bookkeeping
    # ------------------------------------------------------------------

    async def request_cancel(self, generation_id: uuid.UUID) -> bool:
        """Flag a cancellation request; False if the record is already terminal."""
        result = await self._db.execute(
            update(GenerationRecord)
            .where(
                GenerationRecord.generation_id == generation_id,
                GenerationRecord.state.in_(NON_TERMINAL_STATES),
            )
            .values(cancel_requested_at=utcnow())
            .returning(GenerationRecord.generation_id)
            .execution_options(synchronize_session=False)
        )
        return result.first() is not None

    async def record_poll(self, generation_id: uuid.UUID) -> None:
        await self._db.execute(
            update(GenerationRecord)
            .where(GenerationRecord.generation_id == generation_id)
            .values(
                poll_attempts=GenerationRecord.poll_attempts + 1,
                last_polled_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, generation_id: uuid.UUID) -> GenerationRecord | None:
        result = await self._db.execute(
            select(GenerationRecord).where(GenerationRecord.generation_id == generation_id)
        )
        return result.scalar_one_or_none()

    async def get_for_user(
        self, generation_id: uuid.UUID, user_id: uuid.UUID,
    ) -> GenerationRecord | None:
        """Load a record only if *user_id* owns it."""
        result = await self._db.execute(
            select(GenerationRecord).where(
                GenerationRecord.generation_id == generation_id,
                GenerationRecord.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def find_by_task(self, provider: str, task_id: str) -> GenerationRecord | None:
        result = await self._db.execute(
            select(GenerationRecord).where(
                GenerationRecord.provider == provider,
                GenerationRecord.task_id == task_id,
            )
        )
        return result.scalar_one_or_none()

    async def find_by_idempotency_key(
        self, user_id: uuid.UUID, key: str,
    ) -> GenerationRecord | None:
        result = await self._db.execute(
            select(GenerationRecord).where(
                GenerationRecord.user_id == user_id,
                GenerationRecord.idempotency_key == key,
            )
        )
        return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user_id: uuid.UUID,
        state: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[GenerationRecord]:
        """Return the user's records, newest first."""
        stmt = select(GenerationRecord).where(GenerationRecord.user_id == user_id)
        if state is not None:
            stmt = stmt.where(GenerationRecord.state == state)
        stmt = stmt.order_by(GenerationRecord.created_at.desc()).limit(limit).offset(offset)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def list_stale(self, created_before: datetime, limit: int) -> list[GenerationRecord]:
        """Return non-terminal records created before *created_before*, oldest first."""
        result = await self._db.execute(
            select(GenerationRecord)
            .where(
                GenerationRecord.state.in_(NON_TERMINAL_STATES),
                GenerationRecord.created_at < created_before,
            )
            .order_by(GenerationRecord.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())
