"""CreditTransaction model: the append-only half of the credit ledger."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


TRANSACTION_TYPES = ("purchase", "usage", "bonus", "admin_adjustment")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditTransaction(Base):
    """Immutable audit record written with every balance mutation."""

    __tablename__ = "credit_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=True)
    description = Column(String, nullable=True)
    resume_id = Column(String, nullable=True)
    # External checkout session id; unique so a purchase can be applied only once.
    payment_id = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_transactions")
