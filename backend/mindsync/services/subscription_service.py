"""Subscription data access and plan derivation"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from mindsync.models.subscription import Subscription
from mindsync.utils.dates import isoformat_utc

logger = logging.getLogger(__name__)

# Columns a billing event is allowed to set through upsert_subscription
UPSERT_FIELDS = (
    "stripe_customer_id",
    "stripe_subscription_id",
    "stripe_price_id",
    "status",
    "plan",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
    "cancel_reason",
    "trial_start",
    "trial_end",
)


def derive_plan_from_price_id(price_id: Optional[str]) -> str:
    """Map a Stripe price id to a plan tag.

    Substring match, 'premium' wins over 'pro'. Anything else is 'free'.
    """
    if not price_id:
        return "free"
    if "premium" in price_id:
        return "premium"
    if "pro" in price_id:
        return "pro"
    return "free"


def get_subscription_by_user_id(user_id: str, db: Session) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.user_id == user_id).first()


def upsert_subscription(user_id: str, fields: Dict[str, Any], db: Session) -> Subscription:
    """Create or update the single subscription row of a user.

    Unknown keys in ``fields`` are ignored. Flushed, not committed.
    """
    subscription = get_subscription_by_user_id(user_id, db)
    if not subscription:
        subscription = Subscription(
            user_id=user_id,
            status="active",
            plan="free",
            cancel_at_period_end=False,
            payment_history=[]
        )
        db.add(subscription)

    for key in UPSERT_FIELDS:
        if key in fields:
            setattr(subscription, key, fields[key])
    subscription.updated_at = datetime.now(timezone.utc)

    db.flush()
    return subscription


def create_default_subscription(user_id: str, db: Session) -> Subscription:
    """Free, active subscription for a new user (flushed, committed by caller)"""
    return upsert_subscription(user_id, {"status": "active", "plan": "free", "cancel_at_period_end": False}, db)


def cancel_subscription(user_id: str, db: Session, cancel_reason: Optional[str] = None) -> Optional[Subscription]:
    """Soft-cancel: status canceled, plan free. Missing rows are not created."""
    subscription = get_subscription_by_user_id(user_id, db)
    if not subscription:
        return None

    subscription.status = "canceled"
    subscription.plan = "free"
    subscription.cancel_at_period_end = True
    if cancel_reason:
        subscription.cancel_reason = cancel_reason
    subscription.updated_at = datetime.now(timezone.utc)
    db.flush()
    return subscription


def append_payment(user_id: str, payment: Dict[str, Any], succeeded: bool, db: Session) -> Optional[Subscription]:
    """Record an invoice outcome in the payment history.

    An invoice id already in the history is not appended twice.
    """
    subscription = get_subscription_by_user_id(user_id, db)
    if not subscription:
        return None

    history = list(subscription.payment_history or [])
    invoice_id = payment.get("invoice_id")
    if invoice_id and any(
        entry.get("invoice_id") == invoice_id and entry.get("status") == payment.get("status")
        for entry in history
    ):
        logger.info(f"Invoice {invoice_id} already recorded for user {user_id}")
        return subscription

    history.append(payment)
    subscription.payment_history = history

    if succeeded:
        paid_at = datetime.fromisoformat(payment["date"])
        subscription.latest_purchase_date = paid_at
        if not subscription.first_purchase_date:
            subscription.first_purchase_date = paid_at

    subscription.updated_at = datetime.now(timezone.utc)
    db.flush()
    return subscription


def get_subscription_status(user_id: str, db: Session) -> Dict[str, Any]:
    """Subscription summary for the caller, with a free default when none exists"""
    subscription = get_subscription_by_user_id(user_id, db)
    if not subscription:
        return {
            "id": "free_default",
            "plan": "free",
            "status": "active",
            "currentPeriodEnd": (datetime.now(timezone.utc) + timedelta(days=365)).isoformat(),
            "cancelAtPeriodEnd": False
        }

    return {
        "id": str(subscription.id),
        "plan": subscription.plan,
        "status": subscription.status,
        "currentPeriodEnd": isoformat_utc(subscription.current_period_end) or datetime.now(timezone.utc).isoformat(),
        "cancelAtPeriodEnd": subscription.cancel_at_period_end
    }


def serialize_subscription(subscription: Optional[Subscription]) -> Dict[str, Any]:
    """Subscription block of the profile response"""
    if not subscription:
        return {"plan": "free", "status": "active", "cancelAtPeriodEnd": False}

    return {
        "id": str(subscription.id),
        "plan": subscription.plan,
        "status": subscription.status,
        "currentPeriodEnd": isoformat_utc(subscription.current_period_end),
        "cancelAtPeriodEnd": subscription.cancel_at_period_end,
        "trialEnd": isoformat_utc(subscription.trial_end),
        "firstPurchaseDate": isoformat_utc(subscription.first_purchase_date),
        "latestPurchaseDate": isoformat_utc(subscription.latest_purchase_date)
    }
