"""User model."""

from sqlalchemy import CheckConstraint, Column, String, DateTime, Integer
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from config import settings
from database import Base


SUBSCRIPTION_TIERS = ("free", "pro", "premium")


class User(Base):
    """Authenticated user and holder of the spendable credit balance."""
    
    __tablename__ = "users"
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),)
    
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    picture = Column(String, nullable=True)
    # Only the credit ledger writes this column after signup.
    credits = Column(Integer, nullable=False, default=lambda: int(settings.SIGNUP_CREDITS), server_default="3")
    subscription_tier = Column(String, nullable=False, default="free", server_default="free")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    
    # Relationships
    oauth_accounts = relationship("OAuthAccount", back_populates="user", cascade="all, delete-orphan")
    profile = relationship("Profile", back_populates="user", uselist=False, cascade="all, delete-orphan")
    resumes = relationship("Resume", back_populates="user", cascade="all, delete-orphan")
    credit_transactions = relationship("CreditTransaction", back_populates="user")
    payments = relationship("Payment", back_populates="user")
