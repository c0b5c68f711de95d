"""CreditTransaction model for the append-only credit ledger."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from database import Base, utcnow


TRANSACTION_TYPES = ("purchase", "usage", "refund", "bonus", "adjustment")


class CreditTransaction(Base):
    """Immutable balance change. Positive amounts add credits, negative spend them."""

    __tablename__ = "credit_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    tx_type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    generation_id = Column(String, ForeignKey("generations.id"), nullable=True, index=True)
    actor_id = Column(String, nullable=True)
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    user = relationship("User", back_populates="credit_transactions")
