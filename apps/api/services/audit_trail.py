"""Append-only audit trail for privileged mutations."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.audit_log import AUDIT_ACTIONS, AuditLogEntry

logger = logging.getLogger(__name__)


def diff_fields(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Reduce two snapshots to the keys whose values changed."""
    changed = [key for key in sorted(set(before) | set(after)) if before.get(key) != after.get(key)]
    return {
        "before": {key: before.get(key) for key in changed},
        "after": {key: after.get(key) for key in changed},
    }


async def record(
    db: AsyncSession,
    *,
    actor_id: Optional[str],
    action: str,
    entity_type: str,
    entity_id: str,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
    reason: Optional[str] = None,
) -> str:
    """Append one audit entry and commit it. Call after the audited mutation commits."""
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")

    entry = AuditLogEntry(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        before_json=before,
        after_json=after,
        reason=reason,
    )
    db.add(entry)
    await db.commit()
    logger.info(
        "audit %s on %s:%s by %s",
        action,
        entity_type,
        entity_id,
        actor_id or "system",
    )
    return entry.id


def serialize_entry(entry: AuditLogEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "actor_id": entry.actor_id,
        "action": entry.action,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "before": entry.before_json,
        "after": entry.after_json,
        "reason": entry.reason,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def list_audit_logs(
    db: AsyncSession,
    *,
    actor_id: Optional[str] = None,
    action: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[AuditLogEntry]:
    query = select(AuditLogEntry)
    if actor_id:
        query = query.where(AuditLogEntry.actor_id == actor_id)
    if action:
        query = query.where(AuditLogEntry.action == action)
    if entity_type:
        query = query.where(AuditLogEntry.entity_type == entity_type)
    if entity_id:
        query = query.where(AuditLogEntry.entity_id == entity_id)
    query = (
        query.order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())
        .offset(max(int(offset), 0))
        .limit(max(min(int(limit), 200), 1))
    )
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_entity_audit_trail(db: AsyncSession, entity_type: str, entity_id: str) -> List[AuditLogEntry]:
    """Full history for one entity, oldest first."""
    result = await db.execute(
        select(AuditLogEntry)
        .where(AuditLogEntry.entity_type == entity_type, AuditLogEntry.entity_id == entity_id)
        .order_by(AuditLogEntry.created_at.asc())
    )
    return list(result.scalars().all())
