"""ListeningSession model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from mindsync.models.base import Base


class ListeningSession(Base):
    """A completed focus/relax/sleep listening session"""
    __tablename__ = "listening_sessions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), ForeignKey("users.clerk_id", ondelete="CASCADE"), nullable=False, index=True)
    category = Column(String(20), nullable=False)  # 'focus', 'relax', 'sleep'
    duration = Column(Integer, nullable=False)  # minutes
    completed_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    user = relationship("User", back_populates="listening_sessions")
