"""Privileged account and configuration operations. Each mutation is audited once, after commit."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import utcnow
from models.plan import Plan
from models.risk_flag import RiskFlag
from models.tool_config import ToolConfig
from models.user import USER_ROLES, User
from services import audit_trail, ledger, plans, risk_guard, usage_stats
from services.errors import (
    AccountNotFound,
    DuplicatePlan,
    PermissionDenied,
    RiskFlagAlreadyResolved,
    RiskFlagNotFound,
)
from services.orchestrator import AccountContext, get_generation_stats
from services.tools import CONFIG_FIELDS, ResolvedToolConfig, get_tool_config

logger = logging.getLogger(__name__)

STAFF_ROLES = ("support", "admin", "super_admin")
ADMIN_ROLES = ("admin", "super_admin")
GRANT_TYPES = ("purchase", "bonus", "adjustment")


async def _get_account(db: AsyncSession, account_id: str) -> User:
    result = await db.execute(
        select(User)
        .where(User.id == account_id, User.deleted_at.is_(None))
        .execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise AccountNotFound(f"Account {account_id} not found")
    return user


def serialize_account(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "credits": user.credits,
        "is_banned": bool(user.is_banned),
        "ban_reason": user.ban_reason,
        "plan_id": user.plan_id,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


async def grant_credits(
    db: AsyncSession,
    actor: AccountContext,
    account_id: str,
    amount: int,
    *,
    tx_type: str = "adjustment",
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    if tx_type not in GRANT_TYPES:
        raise ValueError(f"tx_type must be one of {', '.join(GRANT_TYPES)}")
    await _get_account(db, account_id)
    transaction_id = await ledger.credit(
        db,
        account_id,
        amount,
        tx_type,
        description=reason or "Admin credit grant",
        actor_id=actor.account_id,
    )
    return {"transaction_id": transaction_id, "balance_after": await ledger.get_balance(db, account_id)}


async def refund_credits(
    db: AsyncSession,
    actor: AccountContext,
    account_id: str,
    amount: int,
    reason: str,
) -> Dict[str, Any]:
    await _get_account(db, account_id)
    transaction_id = await ledger.credit(
        db,
        account_id,
        amount,
        "refund",
        description=f"Refund: {reason}",
        actor_id=actor.account_id,
    )
    return {"transaction_id": transaction_id, "balance_after": await ledger.get_balance(db, account_id)}


async def set_ban(
    db: AsyncSession,
    actor: AccountContext,
    account_id: str,
    banned: bool,
    reason: Optional[str] = None,
) -> User:
    if account_id == actor.account_id:
        raise PermissionDenied("Admins cannot change their own ban state.")
    user = await _get_account(db, account_id)
    before = {"is_banned": bool(user.is_banned), "ban_reason": user.ban_reason}
    user.is_banned = banned
    user.ban_reason = reason if banned else None
    after = {"is_banned": banned, "ban_reason": user.ban_reason}
    await db.commit()

    await audit_trail.record(
        db,
        actor_id=actor.account_id,
        action="ban" if banned else "unban",
        entity_type="account",
        entity_id=account_id,
        before=before,
        after=after,
        reason=reason,
    )
    logger.info("Account %s %s by %s", account_id, "banned" if banned else "unbanned", actor.account_id)
    return user


async def change_role(
    db: AsyncSession,
    actor: AccountContext,
    account_id: str,
    role: str,
    reason: Optional[str] = None,
) -> User:
    if role not in USER_ROLES:
        raise ValueError(f"role must be one of {', '.join(USER_ROLES)}")
    if account_id == actor.account_id:
        raise PermissionDenied("Admins cannot change their own role.")
    user = await _get_account(db, account_id)
    if actor.role != "super_admin" and (role in ADMIN_ROLES or user.role in ADMIN_ROLES):
        raise PermissionDenied("Only super admins can grant or revoke admin roles.")

    before = {"role": user.role}
    user.role = role
    await db.commit()

    await audit_trail.record(
        db,
        actor_id=actor.account_id,
        action="role_change",
        entity_type="account",
        entity_id=account_id,
        before=before,
        after={"role": role},
        reason=reason,
    )
    return user


async def soft_delete_account(
    db: AsyncSession,
    actor: AccountContext,
    account_id: str,
    reason: Optional[str] = None,
) -> None:
    """Tombstone an account. Balances and history stay intact."""
    if account_id == actor.account_id:
        raise PermissionDenied("Admins cannot delete their own account.")
    user = await _get_account(db, account_id)
    deleted_at = utcnow()
    user.deleted_at = deleted_at
    await db.commit()

    await audit_trail.record(
        db,
        actor_id=actor.account_id,
        action="delete",
        entity_type="account",
        entity_id=account_id,
        before={"deleted_at": None},
        after={"deleted_at": deleted_at.isoformat()},
        reason=reason,
    )


async def update_tool_config(
    db: AsyncSession,
    actor: AccountContext,
    tool_name: str,
    changes: Dict[str, Any],
    reason: Optional[str] = None,
) -> ResolvedToolConfig:
    """Apply config overrides for a tool. Takes effect on the next request."""
    unknown = set(changes) - set(CONFIG_FIELDS)
    if unknown:
        raise ValueError(f"Unknown tool config fields: {', '.join(sorted(unknown))}")
    for field in ("credit_cost", "hourly_limit", "daily_limit"):
        if changes.get(field) is not None and int(changes[field]) < 0:
            raise ValueError(f"{field} must be >= 0")

    current = await get_tool_config(db, tool_name)
    result = await db.execute(select(ToolConfig).where(ToolConfig.tool_name == current.tool_name))
    row = result.scalar_one_or_none()
    if row is None:
        row = ToolConfig(tool_name=current.tool_name)
        db.add(row)
    for field, value in changes.items():
        setattr(row, field, value)
    row.updated_by = actor.account_id
    await db.commit()

    updated = await get_tool_config(db, current.tool_name)
    diff = audit_trail.diff_fields(current.snapshot(), updated.snapshot())
    await audit_trail.record(
        db,
        actor_id=actor.account_id,
        action="config_change",
        entity_type="tool",
        entity_id=current.tool_name,
        before=diff["before"],
        after=diff["after"],
        reason=reason,
    )
    return updated


def _validate_plan_fields(changes: Dict[str, Any]) -> None:
    unknown = set(changes) - set(plans.PLAN_FIELDS)
    if unknown:
        raise ValueError(f"Unknown plan fields: {', '.join(sorted(unknown))}")
    if changes.get("credits") is not None and int(changes["credits"]) < 1:
        raise ValueError("credits must be >= 1")
    if changes.get("price_cents") is not None and int(changes["price_cents"]) < 0:
        raise ValueError("price_cents must be >= 0")


async def create_plan(
    db: AsyncSession,
    actor: AccountContext,
    fields: Dict[str, Any],
    *,
    metadata: Optional[Dict[str, Any]] = None,
    reason: Optional[str] = None,
) -> Plan:
    _validate_plan_fields(fields)
    if not fields.get("name") or fields.get("credits") is None:
        raise ValueError("name and credits are required")
    plan = Plan(**fields, metadata_json=metadata)
    db.add(plan)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise DuplicatePlan(f"A plan named {fields['name']} already exists") from exc
    await db.refresh(plan)

    await audit_trail.record(
        db,
        actor_id=actor.account_id,
        action="config_change",
        entity_type="plan",
        entity_id=plan.id,
        before=None,
        after=plans.plan_snapshot(plan),
        reason=reason,
    )
    return plan


async def update_plan(
    db: AsyncSession,
    actor: AccountContext,
    plan_id: str,
    changes: Dict[str, Any],
    reason: Optional[str] = None,
) -> Plan:
    """Edit or (de)activate a plan. Accounts already on it keep it."""
    _validate_plan_fields(changes)
    plan = await plans.get_plan(db, plan_id)
    before = plans.plan_snapshot(plan)
    for field, value in changes.items():
        setattr(plan, field, value)
    after = plans.plan_snapshot(plan)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise DuplicatePlan(f"A plan named {changes.get('name')} already exists") from exc

    diff = audit_trail.diff_fields(before, after)
    await audit_trail.record(
        db,
        actor_id=actor.account_id,
        action="config_change",
        entity_type="plan",
        entity_id=plan.id,
        before=diff["before"],
        after=diff["after"],
        reason=reason,
    )
    return plan


async def change_plan(
    db: AsyncSession,
    actor: AccountContext,
    account_id: str,
    plan_id: Optional[str],
    reason: Optional[str] = None,
) -> User:
    """Move an account onto an active plan, or off any plan with ``plan_id=None``."""
    user = await _get_account(db, account_id)
    if plan_id is not None:
        await plans.get_active_plan(db, plan_id)

    before = {"plan_id": user.plan_id}
    user.plan_id = plan_id
    await db.commit()

    await audit_trail.record(
        db,
        actor_id=actor.account_id,
        action="plan_change",
        entity_type="account",
        entity_id=account_id,
        before=before,
        after={"plan_id": plan_id},
        reason=reason,
    )
    logger.info("Account %s moved to plan %s by %s", account_id, plan_id, actor.account_id)
    return user


async def resolve_risk_flag(
    db: AsyncSession,
    actor: AccountContext,
    flag_id: str,
    notes: Optional[str] = None,
) -> RiskFlag:
    result = await db.execute(
        select(RiskFlag).where(RiskFlag.id == flag_id).execution_options(populate_existing=True)
    )
    flag = result.scalar_one_or_none()
    if flag is None:
        raise RiskFlagNotFound(f"Risk flag {flag_id} not found")
    if flag.is_resolved:
        raise RiskFlagAlreadyResolved(f"Risk flag {flag_id} is already resolved")

    flag.is_resolved = True
    flag.resolved_by = actor.account_id
    flag.resolved_at = utcnow()
    flag.resolution_notes = notes
    await db.commit()

    await audit_trail.record(
        db,
        actor_id=actor.account_id,
        action="risk_flag_resolve",
        entity_type="risk_flag",
        entity_id=flag.id,
        before={"is_resolved": False, "resolved_by": None},
        after={"is_resolved": True, "resolved_by": actor.account_id},
        reason=notes,
    )
    return flag


async def get_dashboard_stats(db: AsyncSession) -> Dict[str, Any]:
    return {
        "credits": await ledger.get_credit_stats(db),
        "generations": await get_generation_stats(db),
        "usage": await usage_stats.get_usage_stats(db),
        "open_risk_flags": await risk_guard.count_open_flags(db),
    }
