"""AuditLogEntry model for privileged state changes."""

import uuid

from sqlalchemy import Column, DateTime, JSON, String

from database import Base, utcnow


AUDIT_ACTIONS = (
    "credit_transaction",
    "ban",
    "unban",
    "role_change",
    "delete",
    "config_change",
    "plan_change",
    "risk_flag_resolve",
    "generation",
)


class AuditLogEntry(Base):
    """Immutable before/after record.

    Entity and actor ids are plain strings so entries outlive their targets.
    """

    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    actor_id = Column(String, nullable=True, index=True)
    action = Column(String, nullable=False, index=True)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    before_json = Column(JSON, nullable=True)
    after_json = Column(JSON, nullable=True)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
