"""RiskFlag model: anomalous usage raised by the risk guard for admin review."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, JSON, String
from sqlalchemy.orm import relationship

from database import Base, utcnow


RISK_FLAG_TYPES = ("volume_near_limit", "limit_exceeded")
RISK_SEVERITIES = ("low", "medium", "high", "critical")


class RiskFlag(Base):
    """One open or resolved flag against an account's use of a tool."""

    __tablename__ = "risk_flags"
    __table_args__ = (Index("ix_risk_flags_open_lookup", "user_id", "tool_name", "flag_type", "is_resolved"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    tool_name = Column(String, nullable=False)
    flag_type = Column(String, nullable=False)  # volume_near_limit, limit_exceeded
    severity = Column(String, nullable=False, default="medium")
    description = Column(String, nullable=False)
    metadata_json = Column(JSON, nullable=True)
    is_resolved = Column(Boolean, nullable=False, default=False)
    resolved_by = Column(String, nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolution_notes = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    user = relationship("User", back_populates="risk_flags")
