"""Admin router: credit grants, bans, roles, plans, tool configuration, risk flags and the audit trail."""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import require_roles
from services import admin, audit_trail, plans, risk_guard
from services.orchestrator import AccountContext
from services.tools import serialize_tool

router = APIRouter()

require_admin = require_roles(*admin.ADMIN_ROLES)
require_staff = require_roles(*admin.STAFF_ROLES)


class CreditGrantRequest(BaseModel):
    amount: int = Field(ge=1, le=1_000_000)
    kind: Literal["grant", "refund"] = "grant"
    tx_type: Literal["purchase", "bonus", "adjustment"] = "adjustment"
    reason: str = Field(min_length=1, max_length=500)


class BanRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class UnbanRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class RoleChangeRequest(BaseModel):
    role: Literal["user", "support", "admin", "super_admin"]
    reason: Optional[str] = Field(default=None, max_length=500)


class ToolConfigUpdateRequest(BaseModel):
    credit_cost: Optional[int] = Field(default=None, ge=0, le=10000)
    hourly_limit: Optional[int] = Field(default=None, ge=0)
    daily_limit: Optional[int] = Field(default=None, ge=0)
    model: Optional[str] = Field(default=None, min_length=1, max_length=120)
    is_enabled: Optional[bool] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class PlanChangeRequest(BaseModel):
    plan_id: Optional[str] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class PlanCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    credits: int = Field(ge=1, le=1_000_000)
    price_cents: int = Field(default=0, ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    is_active: bool = True
    metadata: Optional[Dict[str, Any]] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class PlanUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    credits: Optional[int] = Field(default=None, ge=1, le=1_000_000)
    price_cents: Optional[int] = Field(default=None, ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    is_active: Optional[bool] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class RiskFlagResolveRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=1000)


@router.post("/accounts/{account_id}/credits")
async def grant_account_credits(
    account_id: str,
    request: CreditGrantRequest,
    actor: AccountContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if request.kind == "refund":
        return await admin.refund_credits(db, actor, account_id, request.amount, request.reason)
    return await admin.grant_credits(
        db,
        actor,
        account_id,
        request.amount,
        tx_type=request.tx_type,
        reason=request.reason,
    )


@router.post("/accounts/{account_id}/ban")
async def ban_account(
    account_id: str,
    request: BanRequest,
    actor: AccountContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user = await admin.set_ban(db, actor, account_id, True, request.reason)
    return admin.serialize_account(user)


@router.post("/accounts/{account_id}/unban")
async def unban_account(
    account_id: str,
    request: UnbanRequest,
    actor: AccountContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user = await admin.set_ban(db, actor, account_id, False, request.reason)
    return admin.serialize_account(user)


@router.post("/accounts/{account_id}/role")
async def change_account_role(
    account_id: str,
    request: RoleChangeRequest,
    actor: AccountContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user = await admin.change_role(db, actor, account_id, request.role, request.reason)
    return admin.serialize_account(user)


@router.delete("/accounts/{account_id}")
async def delete_account(
    account_id: str,
    reason: Optional[str] = Query(default=None, max_length=500),
    actor: AccountContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await admin.soft_delete_account(db, actor, account_id, reason)
    return {"ok": True}


@router.post("/accounts/{account_id}/plan")
async def change_account_plan(
    account_id: str,
    request: PlanChangeRequest,
    actor: AccountContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user = await admin.change_plan(db, actor, account_id, request.plan_id, request.reason)
    return admin.serialize_account(user)


@router.get("/plans")
async def list_all_plans(
    _staff: AccountContext = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    items = await plans.list_plans(db, include_inactive=True)
    return {"plans": [plans.serialize_plan(plan) for plan in items]}


@router.post("/plans")
async def create_plan(
    request: PlanCreateRequest,
    actor: AccountContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    fields = request.model_dump(exclude={"metadata", "reason"})
    plan = await admin.create_plan(db, actor, fields, metadata=request.metadata, reason=request.reason)
    return plans.serialize_plan(plan)


@router.put("/plans/{plan_id}")
async def update_plan(
    plan_id: str,
    request: PlanUpdateRequest,
    actor: AccountContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    changes = request.model_dump(exclude_none=True, exclude={"reason"})
    plan = await admin.update_plan(db, actor, plan_id, changes, request.reason)
    return plans.serialize_plan(plan)


@router.get("/risk-flags")
async def list_risk_flags(
    resolved: Optional[bool] = Query(default=False),
    account_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _staff: AccountContext = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    flags = await risk_guard.list_risk_flags(
        db,
        resolved=resolved,
        account_id=account_id,
        limit=limit,
        offset=offset,
    )
    return {"items": [risk_guard.serialize_flag(flag) for flag in flags], "limit": limit, "offset": offset}


@router.post("/risk-flags/{flag_id}/resolve")
async def resolve_risk_flag(
    flag_id: str,
    request: RiskFlagResolveRequest,
    actor: AccountContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    flag = await admin.resolve_risk_flag(db, actor, flag_id, request.notes)
    return risk_guard.serialize_flag(flag)


@router.put("/tools/{tool_name}")
async def update_tool(
    tool_name: str,
    request: ToolConfigUpdateRequest,
    actor: AccountContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    changes = request.model_dump(exclude_unset=True, exclude={"reason"})
    config = await admin.update_tool_config(db, actor, tool_name, changes, request.reason)
    return serialize_tool(config)


@router.get("/audit-logs")
async def list_audit_logs(
    actor_id: Optional[str] = Query(default=None),
    action: Optional[str] = Query(default=None),
    entity_type: Optional[str] = Query(default=None),
    entity_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _staff: AccountContext = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    entries = await audit_trail.list_audit_logs(
        db,
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        limit=limit,
        offset=offset,
    )
    return {"items": [audit_trail.serialize_entry(entry) for entry in entries], "limit": limit, "offset": offset}


@router.get("/audit-logs/{entity_type}/{entity_id}")
async def entity_audit_trail(
    entity_type: str,
    entity_id: str,
    _staff: AccountContext = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    entries = await audit_trail.get_entity_audit_trail(db, entity_type, entity_id)
    return {"items": [audit_trail.serialize_entry(entry) for entry in entries]}


@router.get("/stats")
async def dashboard_stats(
    _staff: AccountContext = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    return await admin.get_dashboard_stats(db)
