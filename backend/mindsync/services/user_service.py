"""User data access: lookups by Clerk id and Stripe customer id, lifecycle writes"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mindsync.models.user import PLANS, User, default_stats
from mindsync.services.subscription_service import create_default_subscription

logger = logging.getLogger(__name__)


def get_user_by_clerk_id(clerk_id: str, db: Session) -> Optional[User]:
    return db.query(User).filter(User.clerk_id == clerk_id).first()


def get_user_by_customer_id(customer_id: str, db: Session) -> Optional[User]:
    if not customer_id:
        return None
    return db.query(User).filter(User.stripe_customer_id == customer_id).first()


def create_user_with_subscription(clerk_id: str, email: str, name: Optional[str], db: Session) -> Optional[User]:
    """Create a user and its free subscription in a single transaction.

    A replayed creation for an existing Clerk id is a no-op.

    Returns:
        The new User, or None if the user already existed
    """
    if get_user_by_clerk_id(clerk_id, db):
        logger.info(f"User {clerk_id} already exists, skipping creation")
        return None

    user = User(
        clerk_id=clerk_id,
        email=email,
        name=name or None,
        plan="free",
        stats=default_stats(),
        preferences={}
    )
    try:
        db.add(user)
        create_default_subscription(clerk_id, db)
        db.commit()
    except IntegrityError:
        # Concurrent delivery of the same event won the insert
        db.rollback()
        logger.info(f"User {clerk_id} was created concurrently, treating as success")
        return None

    db.refresh(user)
    logger.info(f"Created user {clerk_id} with free subscription")
    return user


def upsert_user_identity(clerk_id: str, email: str, name: Optional[str], db: Session) -> User:
    """Set email (and name when given) on the user, creating the row if missing.

    An existing user keeps its plan and subscription untouched.
    """
    user = get_user_by_clerk_id(clerk_id, db)
    if not user:
        user = User(clerk_id=clerk_id, email=email, plan="free", stats=default_stats(), preferences={})
        db.add(user)
        create_default_subscription(clerk_id, db)
        logger.info(f"User {clerk_id} not found on update, creating it")

    user.email = email
    if name:
        user.name = name
    user.updated_at = datetime.now(timezone.utc)

    db.commit()
    db.refresh(user)
    return user


def set_stripe_customer_id(clerk_id: str, customer_id: Optional[str], db: Session) -> Optional[User]:
    """Link a Stripe customer to an existing user (flushed, committed by caller).

    Unknown users are left alone.
    """
    user = get_user_by_clerk_id(clerk_id, db)
    if not user:
        logger.warning(f"Cannot link Stripe customer {customer_id}: user {clerk_id} not found")
        return None

    user.stripe_customer_id = customer_id
    user.updated_at = datetime.now(timezone.utc)
    db.flush()
    return user


def set_user_plan(user: User, plan: str, db: Session):
    """Mirror the billing plan onto the user row (flushed, committed by caller)"""
    if plan not in PLANS:
        raise ValueError(f"Unknown plan: {plan}")
    if user.plan != plan:
        user.plan = plan
        user.updated_at = datetime.now(timezone.utc)
    db.flush()


def update_preferences(clerk_id: str, preferences: dict, db: Session) -> Optional[User]:
    """Merge new keys into the stored preference bag"""
    user = get_user_by_clerk_id(clerk_id, db)
    if not user:
        return None

    merged = dict(user.preferences or {})
    merged.update(preferences)
    user.preferences = merged
    user.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(user)
    return user


def touch_last_login(clerk_id: str, db: Session):
    user = get_user_by_clerk_id(clerk_id, db)
    if user:
        user.last_login_at = datetime.now(timezone.utc)
        db.commit()


def delete_user(clerk_id: str, db: Session) -> bool:
    """Delete the user together with its subscription and listening sessions.

    Returns:
        True if a row was deleted
    """
    user = get_user_by_clerk_id(clerk_id, db)
    if not user:
        return False

    # Subscription and listening sessions cascade through the relationships
    db.delete(user)
    db.commit()
    return True
