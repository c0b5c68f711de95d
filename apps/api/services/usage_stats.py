"""Daily usage counters per account and tool.

Counters are bumped with a single dialect upsert so concurrent requests on the
same day never lose an increment. ``bump`` does not commit: callers fold it into
the transaction that records the generation it describes.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import utcnow
from models.usage_stat import UsageStat

COUNTER_FIELDS = ("generations_count", "cache_hits", "cache_misses", "tokens_used", "credits_used")


def _insert_for(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Usage counters need an upsert-capable database, got {dialect}")


async def bump(
    db: AsyncSession,
    account_id: str,
    tool_name: str,
    *,
    day: Optional[date] = None,
    **increments: int,
) -> None:
    """Add ``increments`` to the (account, day, tool) row, creating it on first use."""
    unknown = set(increments) - set(COUNTER_FIELDS)
    if unknown:
        raise ValueError(f"Unknown usage counters: {', '.join(sorted(unknown))}")

    insert = _insert_for(db)
    now = utcnow()
    stmt = insert(UsageStat).values(
        user_id=account_id,
        stat_date=day or now.date(),
        tool_name=tool_name,
        updated_at=now,
        **{field: int(increments.get(field, 0)) for field in COUNTER_FIELDS},
    )
    set_ = {field: getattr(UsageStat, field) + getattr(stmt.excluded, field) for field in COUNTER_FIELDS}
    set_["updated_at"] = stmt.excluded.updated_at
    await db.execute(
        stmt.on_conflict_do_update(
            index_elements=["user_id", "stat_date", "tool_name"],
            set_=set_,
        )
    )


async def get_usage_stats(
    db: AsyncSession,
    account_id: Optional[str] = None,
    days: int = 30,
) -> Dict[str, Any]:
    """Totals over the last ``days`` days, with per-tool delivered generation counts."""
    window = max(int(days), 1)
    since = utcnow().date() - timedelta(days=window - 1)
    query = (
        select(
            UsageStat.tool_name,
            *[func.coalesce(func.sum(getattr(UsageStat, field)), 0) for field in COUNTER_FIELDS],
        )
        .where(UsageStat.stat_date >= since)
        .group_by(UsageStat.tool_name)
    )
    if account_id:
        query = query.where(UsageStat.user_id == account_id)
    result = await db.execute(query)

    totals = {field: 0 for field in COUNTER_FIELDS}
    tool_usage: Dict[str, int] = {}
    for row in result.all():
        tool_name, counts = row[0], row[1:]
        for field, value in zip(COUNTER_FIELDS, counts):
            totals[field] += int(value or 0)
        tool_usage[tool_name] = int(counts[0] or 0)

    lookups = totals["cache_hits"] + totals["cache_misses"]
    return {
        "days": window,
        "generations": totals["generations_count"],
        "cache_hits": totals["cache_hits"],
        "cache_misses": totals["cache_misses"],
        "cache_hit_rate": round(totals["cache_hits"] / lookups, 4) if lookups else 0.0,
        "tokens_used": totals["tokens_used"],
        "credits_used": totals["credits_used"],
        "tool_usage": dict(sorted(tool_usage.items())),
    }
