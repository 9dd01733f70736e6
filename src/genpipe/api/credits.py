"""Credit balance and grant API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from genpipe.api.dependencies import CurrentUser, get_current_user, require_admin
from genpipe.database import get_db
from genpipe.services.entitlement_service import has_unlimited_entitlement
from genpipe.services.ledger import (
    CreditBalanceResponse,
    GrantRequest,
    GrantResponse,
    InsufficientCredit,
    get_account_summary,
    grant_credits,
)

router = APIRouter(prefix="/api/v1/credits", tags=["credits"])


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/balance", response_model=CreditBalanceResponse)
async def read_balance(
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Return the caller's balance, held credits and spendable credits."""
    unlimited = await has_unlimited_entitlement(db, current_user.user_id)
    return await get_account_summary(db, current_user.user_id, unlimited=unlimited)


@router.post("/grants", status_code=status.HTTP_201_CREATED, response_model=GrantResponse)
async def create_grant(
    body: GrantRequest,
    admin: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Add credits to an account, or adjust it down (admin only)."""
    try:
        balance = await grant_credits(
            db, body.user_id, body.amount,
            txn_type=body.txn_type, reference_id=body.reference_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except InsufficientCredit:
        raise HTTPException(
            status_code=409, detail="Adjustment would drop the balance below held credits",
        )
    await db.commit()
    return GrantResponse(user_id=body.user_id, balance=balance)
