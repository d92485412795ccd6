"""DeletedUser model"""
from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.orm import validates
from datetime import datetime, timezone
from mindsync.models.base import Base
from mindsync.utils.dates import ensure_utc

DELETION_SOURCES = ("user", "admin", "system")


class DeletedUser(Base):
    """Write-once snapshot of an account taken before it is deleted"""
    __tablename__ = "deleted_users"

    id = Column(Integer, primary_key=True, index=True)
    clerk_id = Column(String(255), nullable=False, index=True)
    email = Column(String(255), nullable=False)
    name = Column(String(255), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True)
    plan = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)  # when the live account was created
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    usage_stats = Column(JSON, nullable=True)
    subscription_info = Column(JSON, nullable=True)
    deletion_reason = Column(String(255), nullable=True)
    deletion_source = Column(String(20), nullable=False, index=True)
    feedback_data = Column(JSON, nullable=True)

    @validates("deleted_at")
    def validate_deleted_at(self, key, value):
        # Month buckets are taken from the stored value, which must be UTC
        value = ensure_utc(value)
        return value.astimezone(timezone.utc) if value else value
