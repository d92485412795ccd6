"""User model"""
from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from mindsync.models.base import Base

PLANS = ("free", "premium", "pro")
CATEGORIES = ("focus", "relax", "sleep")


def default_stats() -> dict:
    """Zeroed usage stats for a new account"""
    return {
        "total_sessions_completed": 0,
        "total_minutes_listened": 0,
        "streak_days": 0,
        "categories_usage": {category: 0 for category in CATEGORIES},
        "last_session_at": None,
    }


class User(Base):
    """Accounts mirrored from Clerk"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    clerk_id = Column(String(255), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=False)
    name = Column(String(255), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    plan = Column(String(50), default="free", nullable=False)  # 'free', 'premium', 'pro'
    stats = Column(JSON, default=default_stats, nullable=False)
    preferences = Column(JSON, default=dict, nullable=False)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    subscription = relationship("Subscription", back_populates="user", uselist=False, cascade="all, delete-orphan")
    listening_sessions = relationship("ListeningSession", back_populates="user", cascade="all, delete-orphan")
