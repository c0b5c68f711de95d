"""ToolConfig model: admin overrides for per-tool pricing and limits."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class ToolConfig(Base):
    """Per-tool configuration row. Null columns fall back to settings defaults."""

    __tablename__ = "tool_configs"

    tool_name = Column(String, primary_key=True)
    credit_cost = Column(Integer, nullable=True)
    hourly_limit = Column(Integer, nullable=True)
    daily_limit = Column(Integer, nullable=True)
    model = Column(String, nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=True)
    updated_by = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
