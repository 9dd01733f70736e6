"""Credit ledger -- reservations, settlement, grants, and balance queries.

Every balance mutation is a single conditional UPDATE so that concurrent
requests against the same account serialise on the row instead of racing a
read-then-write.  A reservation holds credits against ``balance - reserved``
and is settled exactly once: ``commit`` spends the credits, ``release``
returns them.  Settling an already-settled reservation into the same state is
a no-op; settling it into the opposite state is a bug and raises.

None of these functions commit -- the caller owns the transaction.
"""

from __future__ import annotations

import uuid

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genpipe.models import CreditAccount, CreditTransaction, Reservation
from genpipe.models.base import utcnow
from genpipe.models.credit import (
    RESERVATION_COMMITTED,
    RESERVATION_HELD,
    RESERVATION_RELEASED,
)
from genpipe.services.audit_logger import AuditLogger

log = structlog.get_logger()
audit = AuditLogger()


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class InsufficientCredit(Exception):
    """Raised when ``balance - reserved`` cannot cover the requested amount."""

    def __init__(self, required: int, available: int) -> None:
        super().__init__(f"Insufficient credits: required {required}, available {available}")
        self.required = required
        self.available = available


class ReservationNotFound(Exception):
    """Raised when settling a reservation id that does not exist."""


class InvalidReservationState(Exception):
    """Raised on commit-after-release or release-after-commit.

    This indicates an orchestration bug, never a user-facing condition.
    """

    def __init__(self, reservation_id: uuid.UUID, current: str, attempted: str) -> None:
        super().__init__(
            f"Reservation {reservation_id} is {current}; cannot transition to {attempted}"
        )
        self.reservation_id = reservation_id
        self.current = current
        self.attempted = attempted


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class CreditBalanceResponse(BaseModel):
    user_id: uuid.UUID
    balance: int
    reserved: int
    available: int
    unlimited: bool = False


class GrantRequest(BaseModel):
    user_id: uuid.UUID
    amount: int
    txn_type: str = Field("grant", pattern="^(grant|purchase|admin_adjustment)$")
    reference_id: uuid.UUID | None = None


class GrantResponse(BaseModel):
    user_id: uuid.UUID
    balance: int


# ---------------------------------------------------------------------------
# Account queries
# ---------------------------------------------------------------------------

async def open_account(db: AsyncSession, user_id: uuid.UUID) -> None:
    """Create an empty account for *user_id* if none exists yet."""
    existing = await db.execute(
        select(CreditAccount.user_id).where(CreditAccount.user_id == user_id)
    )
    if existing.first() is None:
        db.add(CreditAccount(user_id=user_id, balance=0, reserved=0, version=0))
        await db.flush()
        log.info("credit_account_opened", user_id=str(user_id))


async def get_available(db: AsyncSession, user_id: uuid.UUID) -> int:
    """Return ``balance - reserved``; an account that does not exist has nothing."""
    result = await db.execute(
        select(CreditAccount.balance - CreditAccount.reserved).where(
            CreditAccount.user_id == user_id
        )
    )
    available = result.scalar_one_or_none()
    return available or 0


async def get_account_summary(
    db: AsyncSession, user_id: uuid.UUID, unlimited: bool = False,
) -> CreditBalanceResponse:
    """Return balance, reserved and available credits for *user_id*."""
    result = await db.execute(
        select(CreditAccount.balance, CreditAccount.reserved).where(
            CreditAccount.user_id == user_id
        )
    )
    row = result.first()
    balance, reserved = (row[0], row[1]) if row is not None else (0, 0)
    return CreditBalanceResponse(
        user_id=user_id,
        balance=balance,
        reserved=reserved,
        available=balance - reserved,
        unlimited=unlimited,
    )


# ---------------------------------------------------------------------------
# Reserve / commit / release
# ---------------------------------------------------------------------------

async def reserve(db: AsyncSession, user_id: uuid.UUID, amount: int) -> uuid.UUID:
    """Hold *amount* credits against the account and return the reservation id.

    Uses ``UPDATE ... WHERE balance - reserved >= amount`` so two concurrent
    reservations can never both claim the same credits.

    Raises InsufficientCredit if the account cannot cover *amount*.
    """
    if amount <= 0:
        raise ValueError("Reservation amount must be positive")

    now = utcnow()
    result = await db.execute(
        update(CreditAccount)
        .where(
            CreditAccount.user_id == user_id,
            CreditAccount.balance - CreditAccount.reserved >= amount,
        )
        .values(
            reserved=CreditAccount.reserved + amount,
            version=CreditAccount.version + 1,
            updated_at=now,
        )
        .returning(CreditAccount.balance, CreditAccount.reserved)
        .execution_options(synchronize_session=False)
    )
    if result.first() is None:
        available = await get_available(db, user_id)
        log.info(
            "reservation_rejected",
            user_id=str(user_id), required=amount, available=available,
        )
        raise InsufficientCredit(required=amount, available=available)

    reservation_id = uuid.uuid4()
    db.add(
        Reservation(
            reservation_id=reservation_id,
            user_id=user_id,
            amount=amount,
            state=RESERVATION_HELD,
            created_at=now,
        )
    )
    await db.flush()

    audit.log_reservation(user_id, reservation_id, amount, RESERVATION_HELD)
    return reservation_id


async def commit(db: AsyncSession, reservation_id: uuid.UUID) -> bool:
    """Spend a held reservation.

    Returns True when this call settled it, False when it was already
    committed.  Raises InvalidReservationState if it was released.
    """
    row = await _settle(db, reservation_id, RESERVATION_COMMITTED)
    if row is None:
        return False

    user_id, amount = row
    await db.execute(
        update(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .values(
            balance=CreditAccount.balance - amount,
            reserved=CreditAccount.reserved - amount,
            version=CreditAccount.version + 1,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.add(
        CreditTransaction(
            user_id=user_id,
            amount=-amount,
            txn_type="spend",
            reference_id=reservation_id,
            created_at=utcnow(),
        )
    )
    await db.flush()

    audit.log_reservation(user_id, reservation_id, amount, RESERVATION_COMMITTED)
    audit.log_credit_event(user_id, -amount, "spend", reference_id=reservation_id)
    return True


async def release(db: AsyncSession, reservation_id: uuid.UUID) -> bool:
    """Return a held reservation's credits to the available pool.

    Returns True when this call settled it, False when it was already
    released.  Raises InvalidReservationState if it was committed.
    """
    row = await _settle(db, reservation_id, RESERVATION_RELEASED)
    if row is None:
        return False

    user_id, amount = row
    await db.execute(
        update(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .values(
            reserved=CreditAccount.reserved - amount,
            version=CreditAccount.version + 1,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )

    audit.log_reservation(user_id, reservation_id, amount, RESERVATION_RELEASED)
    return True


async def _settle(
    db: AsyncSession, reservation_id: uuid.UUID, target: str,
) -> tuple[uuid.UUID, int] | None:
    """Move a reservation from held to *target*.

    Returns ``(user_id, amount)`` when the transition applied and None when
    the reservation was already in *target*.
    """
    result = await db.execute(
        update(Reservation)
        .where(
            Reservation.reservation_id == reservation_id,
            Reservation.state == RESERVATION_HELD,
        )
        .values(state=target, settled_at=utcnow())
        .returning(Reservation.user_id, Reservation.amount)
        .execution_options(synchronize_session=False)
    )
    row = result.first()
    if row is not None:
        return row[0], row[1]

    current = await db.execute(
        select(Reservation.state).where(Reservation.reservation_id == reservation_id)
    )
    state = current.scalar_one_or_none()
    if state is None:
        raise ReservationNotFound(f"Reservation {reservation_id} not found")
    if state == target:
        log.info(
            "reservation_already_settled",
            reservation_id=str(reservation_id), state=state,
        )
        return None

    audit.log_invariant_violation(reservation_id, state, target)
    raise InvalidReservationState(reservation_id, state, target)


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------

async def grant_credits(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    txn_type: str = "grant",
    reference_id: uuid.UUID | None = None,
) -> int:
    """Add (or, for adjustments, remove) credits and journal the change.

    Negative adjustments may not eat into credits that are already reserved.
    Returns the new balance.
    """
    if amount == 0:
        raise ValueError("Grant amount must be non-zero")
    if amount < 0 and txn_type != "admin_adjustment":
        raise ValueError("Only admin adjustments may be negative")

    await open_account(db, user_id)
    result = await db.execute(
        update(CreditAccount)
        .where(
            CreditAccount.user_id == user_id,
            CreditAccount.balance + amount >= CreditAccount.reserved,
        )
        .values(
            balance=CreditAccount.balance + amount,
            version=CreditAccount.version + 1,
            updated_at=utcnow(),
        )
        .returning(CreditAccount.balance)
        .execution_options(synchronize_session=False)
    )
    row = result.first()
    if row is None:
        raise InsufficientCredit(required=-amount, available=await get_available(db, user_id))

    db.add(
        CreditTransaction(
            user_id=user_id,
            amount=amount,
            txn_type=txn_type,
            reference_id=reference_id,
            created_at=utcnow(),
        )
    )
    await db.flush()

    audit.log_credit_event(user_id, amount, txn_type, reference_id=reference_id)
    return row[0]
