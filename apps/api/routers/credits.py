"""Credit balance, history, plans and top-up router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import get_account_context
from routers.rate_limit import rate_limit
from services import ledger, plans
from services.orchestrator import AccountContext

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditTopUpRequest(BaseModel):
    credits: Optional[int] = Field(default=None, ge=1, le=10000)
    plan_id: Optional[str] = None
    billing_reference: Optional[str] = None


@router.get("")
async def credits_summary(
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    return await ledger.get_credit_summary(db, account.account_id)


@router.get("/plans")
async def list_active_plans(
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    return {"plans": [plans.serialize_plan(plan) for plan in await plans.list_plans(db)]}


@router.get("/transactions")
async def list_credit_transactions(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    entries = await ledger.list_transactions(db, account.account_id, limit=limit, offset=offset)
    return {
        "items": [ledger.serialize_transaction(entry) for entry in entries],
        "limit": limit,
        "offset": offset,
    }


@router.post("/topup")
async def purchase_credits(
    request: CreditTopUpRequest,
    _rate_limit: None = Depends(rate_limit("credits_topup", limit=30, window_seconds=3600)),
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    if (request.credits is None) == (request.plan_id is None):
        raise HTTPException(status_code=422, detail="Provide either credits or plan_id")
    # Payment capture happens upstream; this records the purchased credits.
    if request.plan_id is not None:
        plan = await plans.get_active_plan(db, request.plan_id)
        credits = plan.credits
        reference = request.billing_reference or f"plan:{plan.id}"
        description = f"{plan.name} plan purchase ({reference})"
    else:
        credits = request.credits
        reference = request.billing_reference or f"manual:{credits}"
        description = f"Credit purchase ({reference})"

    transaction_id = await ledger.credit(
        db,
        account.account_id,
        credits,
        "purchase",
        description=description,
    )
    logger.info("Recorded purchase of %s credits for %s", credits, account.account_id)
    return {
        "ok": True,
        "transaction_id": transaction_id,
        "credits_added": credits,
        "balance_after": await ledger.get_balance(db, account.account_id),
    }
