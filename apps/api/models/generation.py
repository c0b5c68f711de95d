"""Generation model: one attempt to produce AI content for a tool."""

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base, utcnow


GENERATION_STATUSES = ("pending", "processing", "completed", "failed")


class Generation(Base):
    """Generation lifecycle row. Completed rows double as the cache index."""

    __tablename__ = "generations"
    __table_args__ = (
        Index("ix_generations_cache_lookup", "fingerprint", "tool_name", "status"),
        Index("ix_generations_user_tool_created", "user_id", "tool_name", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    tool_name = Column(String, nullable=False)
    fingerprint = Column(String(64), nullable=False)
    model = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending, processing, completed, failed
    source_text = Column(Text, nullable=False)
    settings_json = Column(JSON, nullable=False)
    result_text = Column(Text, nullable=True)
    credits_charged = Column(Integer, nullable=False, default=0)
    prompt_tokens = Column(Integer, nullable=True)
    completion_tokens = Column(Integer, nullable=True)
    total_tokens = Column(Integer, nullable=True)
    processing_ms = Column(Integer, nullable=True)
    error_message = Column(String, nullable=True)
    retry_of_id = Column(String, nullable=True)
    # Set on zero-charge rows that re-serve another completed generation.
    cached_from_id = Column(String, nullable=True)
    user_rating = Column(Integer, nullable=True)
    user_feedback = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    user = relationship("User", back_populates="generations")
