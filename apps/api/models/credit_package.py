"""CreditPackage model: purchasable credit bundles."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class CreditPackage(Base):
    __tablename__ = "credit_packages"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    credits = Column(Integer, nullable=False)
    price = Column(Integer, nullable=False)  # minor currency units
    stripe_price_id = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
