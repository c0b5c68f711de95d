"""Credit ledger: atomic balance mutations backed by an append-only transaction log."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import TRANSACTION_TYPES, CreditTransaction
from models.user import User
from services import audit_trail
from services.errors import AccountNotFound, InsufficientCredits
from services.tools import list_tool_configs

logger = logging.getLogger(__name__)

CREDIT_TYPES = tuple(tx_type for tx_type in TRANSACTION_TYPES if tx_type != "usage")


async def get_balance(db: AsyncSession, account_id: str) -> int:
    result = await db.execute(
        select(User.credits).where(User.id == account_id, User.deleted_at.is_(None))
    )
    balance = result.scalar_one_or_none()
    if balance is None:
        raise AccountNotFound(f"Account {account_id} not found")
    return int(balance)


async def _apply_credit(
    db: AsyncSession,
    account_id: str,
    amount: int,
    tx_type: str,
    description: Optional[str],
    actor_id: Optional[str],
) -> CreditTransaction:
    result = await db.execute(
        update(User)
        .where(User.id == account_id, User.deleted_at.is_(None))
        .values(credits=User.credits + amount)
        .returning(User.credits)
        .execution_options(synchronize_session=False)
    )
    balance_after = result.scalar_one_or_none()
    if balance_after is None:
        raise AccountNotFound(f"Account {account_id} not found")

    entry = CreditTransaction(
        user_id=account_id,
        tx_type=tx_type,
        amount=amount,
        balance_after=int(balance_after),
        actor_id=actor_id,
        description=description,
    )
    db.add(entry)
    await db.flush()
    return entry


async def credit(
    db: AsyncSession,
    account_id: str,
    amount: int,
    tx_type: str,
    description: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> str:
    """Add credits and record the transaction. Admin-initiated credits are audited."""
    amount = int(amount)
    if amount <= 0:
        raise ValueError("credit amount must be greater than 0")
    if tx_type not in CREDIT_TYPES:
        raise ValueError(f"tx_type must be one of {', '.join(CREDIT_TYPES)}")

    try:
        entry = await _apply_credit(db, account_id, amount, tx_type, description, actor_id)
        entry_id, balance_after = entry.id, entry.balance_after
        await db.commit()
    except AccountNotFound:
        await db.rollback()
        raise

    if actor_id:
        await audit_trail.record(
            db,
            actor_id=actor_id,
            action="credit_transaction",
            entity_type="account",
            entity_id=account_id,
            before={"credits": balance_after - amount},
            after={"credits": balance_after},
            reason=description,
        )
    return entry_id


async def debit(
    db: AsyncSession,
    account_id: str,
    amount: int,
    description: Optional[str] = None,
    generation_id: Optional[str] = None,
    *,
    commit: bool = True,
) -> str:
    """Spend credits with a single check-and-decrement.

    With ``commit=False`` the debit joins the caller's transaction and the caller
    owns commit/rollback.
    """
    amount = int(amount)
    if amount <= 0:
        raise ValueError("debit amount must be greater than 0")

    result = await db.execute(
        update(User)
        .where(
            User.id == account_id,
            User.deleted_at.is_(None),
            User.credits >= amount,
        )
        .values(credits=User.credits - amount)
        .returning(User.credits)
        .execution_options(synchronize_session=False)
    )
    balance_after = result.scalar_one_or_none()
    if balance_after is None:
        try:
            available = await get_balance(db, account_id)
        finally:
            if commit:
                await db.rollback()
        raise InsufficientCredits(required=amount, available=available)

    entry = CreditTransaction(
        user_id=account_id,
        tx_type="usage",
        amount=-amount,
        balance_after=int(balance_after),
        generation_id=generation_id,
        description=description,
    )
    db.add(entry)
    await db.flush()
    entry_id = entry.id
    if commit:
        await db.commit()
    return entry_id


async def ensure_account(db: AsyncSession, account_id: str, email: Optional[str] = None) -> User:
    """Return the account, creating it with the signup bonus on first sight."""
    result = await db.execute(
        select(User).where(User.id == account_id).execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(
        id=account_id,
        email=email or f"{account_id}@users.alphagon.invalid",
        credits=0,
    )
    db.add(user)
    try:
        await db.flush()
        bonus = max(int(settings.SIGNUP_BONUS_CREDITS), 0)
        if bonus:
            await _apply_credit(db, account_id, bonus, "bonus", "Signup bonus", None)
        await db.commit()
    except IntegrityError:
        # Concurrent first request already created the account.
        await db.rollback()
        result = await db.execute(select(User).where(User.id == account_id))
        return result.scalar_one()

    await db.refresh(user)
    logger.info("Created account %s with %s signup credits", account_id, user.credits)
    return user


async def list_transactions(
    db: AsyncSession,
    account_id: str,
    limit: int = 50,
    offset: int = 0,
) -> List[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == account_id)
        .order_by(CreditTransaction.created_at.desc())
        .offset(max(int(offset), 0))
        .limit(max(min(int(limit), 200), 1))
    )
    return list(result.scalars().all())


async def sum_transactions(db: AsyncSession, account_id: str) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
            CreditTransaction.user_id == account_id
        )
    )
    return int(result.scalar() or 0)


def serialize_transaction(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "type": entry.tx_type,
        "amount": entry.amount,
        "balance_after": entry.balance_after,
        "generation_id": entry.generation_id,
        "description": entry.description,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def get_credit_summary(db: AsyncSession, account_id: str) -> Dict[str, Any]:
    balance = await get_balance(db, account_id)
    tools = await list_tool_configs(db)
    entries = await list_transactions(db, account_id, limit=30)
    return {
        "balance": balance,
        "signup_bonus_credits": max(int(settings.SIGNUP_BONUS_CREDITS), 0),
        "costs": {tool.tool_name: tool.credit_cost for tool in tools},
        "recent_entries": [serialize_transaction(entry) for entry in entries],
    }


async def get_credit_stats(db: AsyncSession) -> Dict[str, int]:
    result = await db.execute(
        select(CreditTransaction.tx_type, func.coalesce(func.sum(CreditTransaction.amount), 0)).group_by(
            CreditTransaction.tx_type
        )
    )
    totals = {tx_type: int(total or 0) for tx_type, total in result.all()}
    return {
        "total_credits_issued": totals.get("purchase", 0) + totals.get("bonus", 0),
        "total_credits_used": abs(totals.get("usage", 0)),
        "total_credits_refunded": totals.get("refund", 0),
        "total_adjustments": totals.get("adjustment", 0),
    }
