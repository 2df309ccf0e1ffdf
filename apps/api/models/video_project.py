"""VideoProject model for AI editing jobs."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class VideoProject(Base):
    """A user's video editing project."""

    __tablename__ = "video_projects"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    original_video_url = Column(String, nullable=False)
    edited_video_url = Column(String, nullable=True)
    prompt = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="processing")  # processing, completed, failed
    title = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    hashtags = Column(String, nullable=True)
    thumbnail_url = Column(String, nullable=True)
    music_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="video_projects")
