"""UsageStat model: per-account, per-tool daily usage counters."""

import uuid

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String, UniqueConstraint

from database import Base, utcnow


class UsageStat(Base):
    """Daily rollup of delivered generations, cache hits and misses."""

    __tablename__ = "usage_stats"
    __table_args__ = (UniqueConstraint("user_id", "stat_date", "tool_name", name="uq_usage_stats_user_day_tool"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    stat_date = Column(Date, nullable=False, index=True)
    tool_name = Column(String, nullable=False)
    generations_count = Column(Integer, nullable=False, default=0)
    cache_hits = Column(Integer, nullable=False, default=0)
    cache_misses = Column(Integer, nullable=False, default=0)
    tokens_used = Column(Integer, nullable=False, default=0)
    credits_used = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
