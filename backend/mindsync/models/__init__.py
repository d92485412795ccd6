"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from mindsync.models.base import Base
from mindsync.models.user import User
from mindsync.models.subscription import Subscription
from mindsync.models.deleted_user import DeletedUser
from mindsync.models.listening_session import ListeningSession
from mindsync.models.stripe_event import StripeEvent

# Export all for convenience
__all__ = [
    "Base", "User", "Subscription", "DeletedUser", "ListeningSession", "StripeEvent"
]
