"""Credit plan catalogue lookups."""

from __future__ import annotations

from typing import Any, Dict, List

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.plan import Plan
from services.errors import PlanNotFound, PlanUnavailable

PLAN_FIELDS = ("name", "credits", "price_cents", "currency", "is_active")


async def list_plans(db: AsyncSession, *, include_inactive: bool = False) -> List[Plan]:
    """Cheapest first."""
    query = select(Plan)
    if not include_inactive:
        query = query.where(Plan.is_active.is_(True))
    result = await db.execute(
        query.order_by(Plan.price_cents.asc(), Plan.name.asc()).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_plan(db: AsyncSession, plan_id: str) -> Plan:
    result = await db.execute(select(Plan).where(Plan.id == plan_id).execution_options(populate_existing=True))
    plan = result.scalar_one_or_none()
    if plan is None:
        raise PlanNotFound(f"Plan {plan_id} not found")
    return plan


async def get_active_plan(db: AsyncSession, plan_id: str) -> Plan:
    plan = await get_plan(db, plan_id)
    if not plan.is_active:
        raise PlanUnavailable(f"Plan {plan.name} is no longer offered")
    return plan


def plan_snapshot(plan: Plan) -> Dict[str, Any]:
    return {field: getattr(plan, field) for field in PLAN_FIELDS}


def serialize_plan(plan: Plan) -> Dict[str, Any]:
    return {
        "id": plan.id,
        **plan_snapshot(plan),
        "is_active": bool(plan.is_active),
        "metadata": plan.metadata_json,
        "created_at": plan.created_at.isoformat() if plan.created_at else None,
    }
