import json
import logging
import uuid
import stripe
from typing import Dict, Optional, Any
from datetime import datetime, timezone
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mindsync.core.config import settings
from mindsync.core.errors import (
    AccountSuspendedError,
    AppError,
    BadRequestError,
    ConfigurationError,
    InvalidPriceIdError,
    PriceNotFoundError,
    WebhookVerificationError,
)
from mindsync.core.metrics import checkout_sessions_counter, webhook_events_counter
from mindsync.models.stripe_event import StripeEvent
from mindsync.services import subscription_service, user_service
from mindsync.utils.dates import from_epoch

logger = logging.getLogger(__name__)
billing_logger = logging.getLogger("billing")

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY

ACCOUNT_SUSPENDED_MARKERS = (
    "account has been suspended",
    "account cannot create charges",
    "payments disabled",
)

# ============================================================================
# STRIPE OBJECT ACCESS HELPER
# ============================================================================

def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract a value from a Stripe object or plain dict.

    Key lookup comes first: StripeObject is a dict, and attribute access would
    return dict methods for keys such as ``items``.
    """
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key)
        return default if value is None else value
    value = getattr(obj, key, None)
    return default if value is None else value


def _metadata_user_id(obj: Any) -> Optional[str]:
    metadata = _get_stripe_value(obj, 'metadata', {})
    return _get_stripe_value(metadata, 'userId')

# ============================================================================
# CHECKOUT & PORTAL SESSIONS
# ============================================================================

def _is_simulation_mode() -> bool:
    return settings.ENVIRONMENT == "development" and settings.STRIPE_SIMULATION


def validate_price_id(price_id: Optional[str]):
    """Reject anything that is not a Stripe price id, before Stripe is called"""
    if not price_id:
        raise InvalidPriceIdError("A valid price ID is required.")
    if not price_id.startswith("price_"):
        details = None
        if price_id.startswith("prod_"):
            details = "You provided a product ID (prod_) instead of a price ID (price_)."
        raise InvalidPriceIdError('Invalid price ID format. It must start with "price_".', details=details)


def create_checkout_session(
    user_id: str,
    price_id: Optional[str],
    success_url: Optional[str],
    cancel_url: Optional[str],
    db: Session
) -> Dict[str, Any]:
    """Create a Stripe Checkout session for a subscription.

    The Clerk user id is attached as session and subscription metadata so the
    billing webhook can resolve the user afterwards.

    Returns:
        ``{"url", "sessionId"}`` (plus ``"simulation": True`` in simulation mode)

    Raises:
        InvalidPriceIdError: Missing or malformed price id
        BadRequestError: Missing redirect URLs
        ConfigurationError: STRIPE_SECRET_KEY is not set
        AccountSuspendedError: Stripe reports the merchant account cannot take payments
        PriceNotFoundError: Stripe does not know the price id
    """
    try:
        validate_price_id(price_id)
        if not success_url or not cancel_url:
            raise BadRequestError("Success and cancel URLs are required.")
    except BadRequestError:
        checkout_sessions_counter.labels(status="rejected").inc()
        raise

    if not settings.STRIPE_SECRET_KEY:
        logger.error("STRIPE_SECRET_KEY is not configured")
        raise ConfigurationError("Server configuration error: Stripe is not configured correctly.")

    if _is_simulation_mode():
        session_id = f"sim_{uuid.uuid4().hex[:12]}"
        billing_logger.info(f"Simulated checkout session {session_id} for user {user_id}")
        checkout_sessions_counter.labels(status="simulated").inc()
        return {
            "url": f"{success_url}?simulation=true&sessionId={session_id}",
            "sessionId": session_id,
            "simulation": True
        }

    checkout_params = {
        "mode": "subscription",
        "payment_method_types": ["card"],
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": {"userId": user_id},
        "subscription_data": {"metadata": {"userId": user_id}},
    }

    user = user_service.get_user_by_clerk_id(user_id, db)
    if user and user.stripe_customer_id:
        checkout_params["customer"] = user.stripe_customer_id
    elif user and user.email:
        checkout_params["customer_email"] = user.email

    try:
        session = stripe.checkout.Session.create(**checkout_params)
    except stripe.StripeError as e:
        message = getattr(e, "user_message", None) or str(e)
        if any(marker in message for marker in ACCOUNT_SUSPENDED_MARKERS):
            logger.error(f"Stripe account suspended: {message}")
            checkout_sessions_counter.labels(status="account_suspended").inc()
            raise AccountSuspendedError(
                "Payments are suspended on this Stripe account. Please contact support.",
                details=message
            )
        if "No such price" in message:
            logger.error(f"Price {price_id} does not exist in Stripe: {message}")
            checkout_sessions_counter.labels(status="price_not_found").inc()
            raise PriceNotFoundError(
                f"The price ID '{price_id}' does not exist in Stripe. Check that you are using a valid price ID.",
                details=message
            )
        logger.error(f"Stripe error creating checkout session for user {user_id}: {message}")
        checkout_sessions_counter.labels(status="error").inc()
        raise AppError(message, status_code=500)

    checkout_sessions_counter.labels(status="created").inc()
    billing_logger.info(f"Checkout session {session.id} created for user {user_id}")
    return {"url": session.url, "sessionId": session.id}


def create_portal_session(user_id: str, return_url: Optional[str], db: Session) -> Dict[str, str]:
    """Create a Stripe billing portal session for the user's stored customer"""
    if not return_url:
        raise BadRequestError("A return URL is required.")

    user = user_service.get_user_by_clerk_id(user_id, db)
    if not user or not user.stripe_customer_id:
        raise BadRequestError("No Stripe customer is associated with this user.")

    if not settings.STRIPE_SECRET_KEY:
        logger.error("STRIPE_SECRET_KEY is not configured")
        raise ConfigurationError("Server configuration error: Stripe is not configured correctly.")

    try:
        session = stripe.billing_portal.Session.create(customer=user.stripe_customer_id, return_url=return_url)
    except stripe.StripeError as e:
        logger.error(f"Error creating portal session for user {user_id}: {e}")
        raise AppError("Failed to create customer portal session", status_code=500)

    return {"url": session.url}

# ============================================================================
# WEBHOOK & EVENT LOGGING
# ============================================================================

def log_stripe_event(event_id: str, event_type: str, payload: dict, db: Session) -> StripeEvent:
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if not stripe_event:
        stripe_event = StripeEvent(
            stripe_event_id=event_id,
            event_type=event_type,
            payload=payload,
            processed=False
        )
        db.add(stripe_event)
        try:
            db.commit()
        except IntegrityError:
            # Concurrent redelivery logged it first
            db.rollback()
            return db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
        db.refresh(stripe_event)
    return stripe_event


def mark_stripe_event_processed(event_id: str, db: Session):
    """Mark the event done and commit everything its handler changed"""
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if stripe_event:
        stripe_event.processed = True
        stripe_event.processed_at = datetime.now(timezone.utc)
        stripe_event.error_message = None
    db.commit()


def record_stripe_event_error(event_id: str, error_message: str, db: Session):
    """Keep the event unprocessed so Stripe's redelivery retries it"""
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if stripe_event:
        stripe_event.error_message = error_message
        db.commit()

# ============================================================================
# EVENT HANDLERS
# ============================================================================

def _first_item(subscription: Any) -> Any:
    items = _get_stripe_value(_get_stripe_value(subscription, 'items'), 'data', [])
    return items[0] if items else None


def _period_bound(subscription: Any, item: Any, key: str) -> Optional[datetime]:
    # Newer API versions report billing periods on the subscription item
    return from_epoch(_get_stripe_value(subscription, key, _get_stripe_value(item, key)))


def handle_subscription_change(subscription: Any, db: Session):
    """customer.subscription.created / customer.subscription.updated"""
    customer_id = _get_stripe_value(subscription, 'customer')
    subscription_id = _get_stripe_value(subscription, 'id')
    item = _first_item(subscription)
    price_id = _get_stripe_value(_get_stripe_value(item, 'price'), 'id')
    plan = subscription_service.derive_plan_from_price_id(price_id)

    user = user_service.get_user_by_customer_id(customer_id, db)
    if not user:
        billing_logger.warning(f"No user found for customer {customer_id}, skipping subscription {subscription_id}")
        return

    fields = {
        "stripe_customer_id": customer_id,
        "stripe_subscription_id": subscription_id,
        "stripe_price_id": price_id,
        "status": _get_stripe_value(subscription, 'status'),
        "plan": plan,
        "current_period_start": _period_bound(subscription, item, 'current_period_start'),
        "current_period_end": _period_bound(subscription, item, 'current_period_end'),
        "cancel_at_period_end": bool(_get_stripe_value(subscription, 'cancel_at_period_end', False)),
        "trial_start": from_epoch(_get_stripe_value(subscription, 'trial_start')),
        "trial_end": from_epoch(_get_stripe_value(subscription, 'trial_end')),
    }
    subscription_service.upsert_subscription(user.clerk_id, fields, db)
    user_service.set_user_plan(user, plan, db)

    billing_logger.info(f"Subscription {subscription_id} {fields['status']} for user {user.clerk_id} (plan={plan})")


def handle_subscription_deleted(subscription: Any, db: Session):
    customer_id = _get_stripe_value(subscription, 'customer')
    user = user_service.get_user_by_customer_id(customer_id, db)
    if not user:
        billing_logger.warning(f"No user found for customer {customer_id}, skipping cancellation")
        return

    cancel_reason = _get_stripe_value(_get_stripe_value(subscription, 'cancellation_details'), 'reason')
    subscription_service.cancel_subscription(user.clerk_id, db, cancel_reason=cancel_reason)
    user_service.set_user_plan(user, "free", db)

    billing_logger.info(f"Subscription canceled for user {user.clerk_id}")


def handle_checkout_completed(session: Any, db: Session):
    if _get_stripe_value(session, 'mode') != "subscription":
        return

    user_id = _metadata_user_id(session)
    if not user_id:
        billing_logger.warning("Checkout session completed without userId in metadata")
        return

    customer_id = _get_stripe_value(session, 'customer')
    if not customer_id:
        billing_logger.warning(f"Checkout session for user {user_id} has no customer")
        return

    if user_service.set_stripe_customer_id(user_id, customer_id, db):
        billing_logger.info(f"Checkout completed for user {user_id}")


def handle_customer_update(customer: Any, db: Session):
    """customer.created / customer.updated"""
    user_id = _metadata_user_id(customer)
    if not user_id:
        billing_logger.info("Customer without userId in metadata")
        return

    if user_service.set_stripe_customer_id(user_id, _get_stripe_value(customer, 'id'), db):
        billing_logger.info(f"Customer linked for user {user_id}")


def _handle_invoice(invoice: Any, db: Session, succeeded: bool):
    customer_id = _get_stripe_value(invoice, 'customer')
    invoice_id = _get_stripe_value(invoice, 'id')
    user = user_service.get_user_by_customer_id(customer_id, db)
    if not user:
        billing_logger.warning(f"No user found for customer {customer_id}, skipping invoice {invoice_id}")
        return

    paid_at = _get_stripe_value(_get_stripe_value(invoice, 'status_transitions'), 'paid_at')
    occurred_at = from_epoch(paid_at if succeeded and paid_at else _get_stripe_value(invoice, 'created')) \
        or datetime.now(timezone.utc)
    amount_key = 'amount_paid' if succeeded else 'amount_due'

    payment = {
        "invoice_id": invoice_id,
        "amount": _get_stripe_value(invoice, amount_key, 0),
        "currency": _get_stripe_value(invoice, 'currency'),
        "status": "succeeded" if succeeded else "failed",
        "date": occurred_at.isoformat(),
    }
    subscription_service.append_payment(user.clerk_id, payment, succeeded, db)

    if succeeded:
        billing_logger.info(f"Payment succeeded for user {user.clerk_id} (invoice {invoice_id})")
    else:
        billing_logger.warning(f"Payment failed for user {user.clerk_id} (invoice {invoice_id})")


def handle_invoice_payment_succeeded(invoice: Any, db: Session):
    _handle_invoice(invoice, db, succeeded=True)


def handle_invoice_payment_failed(invoice: Any, db: Session):
    _handle_invoice(invoice, db, succeeded=False)


EVENT_HANDLERS = {
    "customer.subscription.created": handle_subscription_change,
    "customer.subscription.updated": handle_subscription_change,
    "customer.subscription.deleted": handle_subscription_deleted,
    "checkout.session.completed": handle_checkout_completed,
    "customer.created": handle_customer_update,
    "customer.updated": handle_customer_update,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
    "invoice.payment_failed": handle_invoice_payment_failed,
}


def process_stripe_webhook(payload: bytes, sig_header: Optional[str], db: Session) -> Dict[str, Any]:
    """Process Stripe webhook event

    Validates the signature, skips events that were already applied, and
    dispatches by event type. A failing handler rolls back, records the error
    on the event row and leaves it unprocessed so Stripe redelivers it.

    Args:
        payload: Raw request body as bytes (must not be parsed by middleware)
        sig_header: Stripe signature header
        db: Database session

    Returns:
        ``{"received": True}``

    Raises:
        WebhookVerificationError: Missing header/secret or invalid signature
        BadRequestError: The handler failed
    """
    if not sig_header:
        raise WebhookVerificationError("Missing stripe-signature header")

    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Webhook secret not configured")
        raise WebhookVerificationError("Webhook secret not configured")

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise WebhookVerificationError("Invalid payload")
    except stripe.SignatureVerificationError as e:
        logger.error(f"Invalid webhook signature: {e}")
        webhook_events_counter.labels(provider="stripe", event_type="unknown", status="invalid_signature").inc()
        raise WebhookVerificationError("Invalid signature")

    event_id = event["id"]
    event_type = event["type"]
    data = event["data"]["object"]

    # Log event for idempotency
    stripe_event = log_stripe_event(event_id, event_type, json.loads(payload), db)
    if stripe_event.processed:
        logger.info(f"Webhook event {event_id} already processed")
        webhook_events_counter.labels(provider="stripe", event_type=event_type, status="duplicate").inc()
        return {"received": True}

    handler = EVENT_HANDLERS.get(event_type)
    try:
        if handler:
            handler(data, db)
        mark_stripe_event_processed(event_id, db)
    except Exception as e:
        db.rollback()
        logger.error(f"Error processing webhook event {event_id} ({event_type}): {e}", exc_info=True)
        record_stripe_event_error(event_id, str(e), db)
        webhook_events_counter.labels(provider="stripe", event_type=event_type, status="error").inc()
        raise BadRequestError(f"Webhook processing failed: {e}")

    status = "success" if handler else "ignored"
    webhook_events_counter.labels(provider="stripe", event_type=event_type, status=status).inc()
    logger.info(f"Processed webhook event {event_id} of type {event_type}")
    return {"received": True}
