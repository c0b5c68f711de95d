"""Per-account, per-tool generation throttling with anomaly flagging.

Windows count generations the account paid or tried to pay for; zero-charge rows
that re-serve cached content are ignored. Flagged and denied decisions are
persisted as ``RiskFlag`` rows for admin review.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import case, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.generation import Generation
from models.risk_flag import RISK_SEVERITIES, RiskFlag

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)
FAIL_CLOSED_RETRY_SECONDS = 60


@dataclass(frozen=True)
class RiskDecision:
    allowed: bool
    flagged: bool = False
    hourly_count: int = 0
    daily_count: int = 0
    retry_after: int = 0
    reason: Optional[str] = None


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def _window_stats(
    db: AsyncSession,
    account_id: str,
    tool_name: str,
    since: datetime,
) -> Tuple[int, Optional[datetime]]:
    result = await db.execute(
        select(func.count(Generation.id), func.min(Generation.created_at)).where(
            Generation.user_id == account_id,
            Generation.tool_name == tool_name,
            Generation.created_at >= since,
            Generation.cached_from_id.is_(None),
        )
    )
    count, oldest = result.one()
    return int(count or 0), oldest


def _retry_after(oldest: Optional[datetime], window: timedelta, now: datetime) -> int:
    if oldest is None:
        return FAIL_CLOSED_RETRY_SECONDS
    remaining = (_as_utc(oldest) + window - now).total_seconds()
    return max(int(remaining) + 1, 1)


async def check(
    db: AsyncSession,
    account_id: str,
    tool_name: str,
    *,
    hourly_limit: int,
    daily_limit: int,
    now: Optional[datetime] = None,
) -> RiskDecision:
    """Evaluate the sliding windows. Any lookup error denies the request."""
    current = now or datetime.now(timezone.utc)
    try:
        hourly_count, hourly_oldest = await _window_stats(db, account_id, tool_name, current - HOUR)
        daily_count, daily_oldest = await _window_stats(db, account_id, tool_name, current - DAY)
    except Exception:
        logger.exception("Risk guard lookup failed for %s/%s; denying request", account_id, tool_name)
        return RiskDecision(
            allowed=False,
            retry_after=FAIL_CLOSED_RETRY_SECONDS,
            reason="guard_unavailable",
        )

    if hourly_limit > 0 and hourly_count >= hourly_limit:
        return RiskDecision(
            allowed=False,
            hourly_count=hourly_count,
            daily_count=daily_count,
            retry_after=_retry_after(hourly_oldest, HOUR, current),
            reason="hourly_limit",
        )
    if daily_limit > 0 and daily_count >= daily_limit:
        return RiskDecision(
            allowed=False,
            hourly_count=hourly_count,
            daily_count=daily_count,
            retry_after=_retry_after(daily_oldest, DAY, current),
            reason="daily_limit",
        )

    ratio = float(settings.RISK_FLAG_RATIO)
    flagged = (hourly_limit > 0 and hourly_count + 1 >= ratio * hourly_limit) or (
        daily_limit > 0 and daily_count + 1 >= ratio * daily_limit
    )
    if flagged:
        logger.warning(
            "Anomalous generation volume for %s on %s: hourly=%s/%s daily=%s/%s",
            account_id,
            tool_name,
            hourly_count,
            hourly_limit,
            daily_count,
            daily_limit,
        )
    return RiskDecision(
        allowed=True,
        flagged=flagged,
        hourly_count=hourly_count,
        daily_count=daily_count,
    )


async def record_flag(
    db: AsyncSession,
    account_id: str,
    tool_name: str,
    decision: RiskDecision,
    *,
    hourly_limit: int,
    daily_limit: int,
) -> Optional[RiskFlag]:
    """Persist a flag for a flagged or limit-denied decision.

    An account keeps at most one open flag per tool and flag type, so a burst of
    requests near the limit raises a single review item.
    """
    if decision.allowed and not decision.flagged:
        return None
    if not decision.allowed and decision.reason not in ("hourly_limit", "daily_limit"):
        return None

    flag_type = "volume_near_limit" if decision.allowed else "limit_exceeded"
    existing = await db.execute(
        select(RiskFlag.id)
        .where(
            RiskFlag.user_id == account_id,
            RiskFlag.tool_name == tool_name,
            RiskFlag.flag_type == flag_type,
            RiskFlag.is_resolved.is_(False),
        )
        .limit(1)
    )
    if existing.scalar_one_or_none() is not None:
        return None

    flag = RiskFlag(
        user_id=account_id,
        tool_name=tool_name,
        flag_type=flag_type,
        severity="medium" if decision.allowed else "high",
        description=(
            f"Generation volume on {tool_name}: {decision.hourly_count}/{hourly_limit or 'unlimited'} "
            f"this hour, {decision.daily_count}/{daily_limit or 'unlimited'} today"
        ),
        metadata_json={
            "hourly_count": decision.hourly_count,
            "hourly_limit": hourly_limit,
            "daily_count": decision.daily_count,
            "daily_limit": daily_limit,
            "reason": decision.reason,
        },
    )
    db.add(flag)
    await db.commit()
    logger.info("Raised %s risk flag %s for %s on %s", flag_type, flag.id, account_id, tool_name)
    return flag


def _severity_rank():
    return case(
        {severity: rank for rank, severity in enumerate(RISK_SEVERITIES)},
        value=RiskFlag.severity,
        else_=-1,
    )


async def list_risk_flags(
    db: AsyncSession,
    *,
    resolved: Optional[bool] = False,
    account_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[RiskFlag]:
    """Most severe first, then newest."""
    query = select(RiskFlag)
    if resolved is not None:
        query = query.where(RiskFlag.is_resolved.is_(bool(resolved)))
    if account_id:
        query = query.where(RiskFlag.user_id == account_id)
    result = await db.execute(
        query.order_by(_severity_rank().desc(), RiskFlag.created_at.desc())
        .offset(max(int(offset), 0))
        .limit(max(min(int(limit), 200), 1))
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def count_open_flags(db: AsyncSession) -> int:
    result = await db.execute(select(func.count(RiskFlag.id)).where(RiskFlag.is_resolved.is_(False)))
    return int(result.scalar() or 0)


def serialize_flag(flag: RiskFlag) -> Dict[str, Any]:
    return {
        "id": flag.id,
        "user_id": flag.user_id,
        "tool_name": flag.tool_name,
        "flag_type": flag.flag_type,
        "severity": flag.severity,
        "description": flag.description,
        "metadata": flag.metadata_json,
        "is_resolved": bool(flag.is_resolved),
        "resolved_by": flag.resolved_by,
        "resolved_at": flag.resolved_at.isoformat() if flag.resolved_at else None,
        "resolution_notes": flag.resolution_notes,
        "created_at": flag.created_at.isoformat() if flag.created_at else None,
    }
