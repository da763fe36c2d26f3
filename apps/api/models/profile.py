"""Profile model holding the user's reusable resume source material."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Text, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


PROFILE_LIST_FIELDS = (
    "experiences",
    "education",
    "projects",
    "skills",
    "certifications",
    "awards",
    "languages",
    "volunteer_experiences",
)


class Profile(Base):
    """One profile per user; list sections are stored as JSON arrays."""
    
    __tablename__ = "profiles"
    
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, unique=True, index=True)
    full_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    location = Column(String, nullable=True)
    linkedin = Column(String, nullable=True)
    github = Column(String, nullable=True)
    portfolio = Column(String, nullable=True)
    professional_summary = Column(Text, nullable=True)
    experiences = Column(JSON, nullable=False, default=list)
    education = Column(JSON, nullable=False, default=list)
    projects = Column(JSON, nullable=False, default=list)
    skills = Column(JSON, nullable=False, default=list)
    certifications = Column(JSON, nullable=False, default=list)
    awards = Column(JSON, nullable=False, default=list)
    languages = Column(JSON, nullable=False, default=list)
    volunteer_experiences = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    
    # Relationships
    user = relationship("User", back_populates="profile")
    resumes = relationship("Resume", back_populates="profile")
