"""Resume model."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Text, JSON, Boolean
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Resume(Base):
    """A generated or hand-edited resume document."""

    __tablename__ = "resumes"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    profile_id = Column(String, ForeignKey("profiles.id"), nullable=True)
    title = Column(String, nullable=False)
    job_description = Column(Text, nullable=True)
    resume_data = Column(JSON, nullable=False, default=dict)
    is_demo = Column(Boolean, nullable=False, default=False)
    generation_meta = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="resumes")
    profile = relationship("Profile", back_populates="resumes")
