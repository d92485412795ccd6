"""Clerk webhook processing: Svix signature verification and user lifecycle events"""
import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from mindsync.core.config import settings
from mindsync.core.errors import ConfigurationError, MissingFieldError, WebhookVerificationError
from mindsync.core.metrics import webhook_events_counter
from mindsync.services import archive_service, user_service
from mindsync.services.subscription_service import get_subscription_by_user_id

logger = logging.getLogger(__name__)
webhook_logger = logging.getLogger("webhooks")

SIGNATURE_TOLERANCE_SECONDS = 5 * 60
SECRET_PREFIX = "whsec_"


def _decode_secret(secret: str) -> bytes:
    if secret.startswith(SECRET_PREFIX):
        secret = secret[len(SECRET_PREFIX):]
    try:
        return base64.b64decode(secret)
    except (binascii.Error, ValueError):
        raise ConfigurationError("Clerk webhook secret is malformed")


def verify_svix_signature(payload: bytes, svix_id: str, svix_timestamp: str, svix_signature: str, secret: str) -> bool:
    """Verify a Svix-signed webhook (HMAC-SHA256, base64).

    The signed content is ``id.timestamp.body``. The signature header can hold
    several space-separated entries (``v1,sig1 v1,sig2``); any match accepts.
    Timestamps more than five minutes away from now are rejected.
    """
    if not svix_id or not svix_timestamp or not svix_signature:
        return False

    try:
        timestamp = int(svix_timestamp)
    except ValueError:
        logger.warning(f"Clerk webhook has a non-numeric timestamp: {svix_timestamp}")
        return False

    if abs(time.time() - timestamp) > SIGNATURE_TOLERANCE_SECONDS:
        logger.warning(f"Clerk webhook timestamp {svix_timestamp} is outside the tolerance window")
        return False

    signed_payload = svix_id.encode("utf-8") + b"." + svix_timestamp.encode("utf-8") + b"." + payload
    hmac_digest = hmac.new(_decode_secret(secret), signed_payload, hashlib.sha256).digest()
    expected_signature = base64.b64encode(hmac_digest).decode("utf-8")

    for sig_part in svix_signature.split(" "):
        version, _, provided_signature = sig_part.partition(",")
        if version != "v1" or not provided_signature:
            continue
        if hmac.compare_digest(expected_signature, provided_signature):
            return True

    logger.warning("Clerk webhook signature verification failed - no matching signature found")
    return False


def _primary_email(data: Dict[str, Any]) -> Optional[str]:
    addresses = data.get("email_addresses") or []
    if not addresses:
        return None
    return (addresses[0] or {}).get("email_address") or None


def _display_name(data: Dict[str, Any]) -> Optional[str]:
    name = f"{data.get('first_name') or ''} {data.get('last_name') or ''}".strip()
    return name or None


def _require_id(data: Dict[str, Any]) -> str:
    clerk_id = data.get("id")
    if not clerk_id:
        raise MissingFieldError("User event has no id")
    return clerk_id


def handle_user_created(data: Dict[str, Any], db: Session):
    clerk_id = _require_id(data)
    email = _primary_email(data)
    if not email:
        raise MissingFieldError("User has no email address")

    user = user_service.create_user_with_subscription(clerk_id, email, _display_name(data), db)
    if user:
        webhook_logger.info(f"User created: {user.clerk_id}")


def handle_user_updated(data: Dict[str, Any], db: Session):
    clerk_id = _require_id(data)
    email = _primary_email(data)
    if not email:
        raise MissingFieldError("User has no email address")

    user_service.upsert_user_identity(clerk_id, email, _display_name(data), db)
    webhook_logger.info(f"User updated: {clerk_id}")


def handle_user_deleted(data: Dict[str, Any], db: Session):
    """Archive the user, then delete the live rows.

    The archive is committed on its own first, so a failed delete leaves the
    snapshot in place and the redelivered event can finish the job.
    """
    clerk_id = _require_id(data)

    user = user_service.get_user_by_clerk_id(clerk_id, db)
    if not user:
        webhook_logger.info(f"User {clerk_id} not found, nothing to delete")
        return

    subscription = get_subscription_by_user_id(clerk_id, db)
    archive_service.archive_deleted_user(user, subscription, db, deletion_source="user")

    user_service.delete_user(clerk_id, db)
    webhook_logger.info(f"User deleted: {clerk_id}")


def handle_session_created(data: Dict[str, Any], db: Session):
    clerk_id = data.get("user_id")
    if clerk_id:
        user_service.touch_last_login(clerk_id, db)


EVENT_HANDLERS = {
    "user.created": handle_user_created,
    "user.updated": handle_user_updated,
    "user.deleted": handle_user_deleted,
    "session.created": handle_session_created,
}


def process_clerk_webhook(
    payload: bytes,
    svix_id: Optional[str],
    svix_timestamp: Optional[str],
    svix_signature: Optional[str],
    db: Session
) -> Dict[str, Any]:
    """Verify and apply a Clerk webhook.

    Args:
        payload: Raw request body (must not be re-serialized before verification)
        svix_id: ``svix-id`` header
        svix_timestamp: ``svix-timestamp`` header
        svix_signature: ``svix-signature`` header
        db: Database session

    Returns:
        ``{"success": True}``

    Raises:
        WebhookVerificationError: Missing headers or bad signature
        ConfigurationError: CLERK_WEBHOOK_SECRET is not set
        MissingFieldError: The event lacks a required field
    """
    if not svix_id or not svix_timestamp or not svix_signature:
        raise WebhookVerificationError("Missing webhook headers")

    if not settings.CLERK_WEBHOOK_SECRET:
        logger.error("CLERK_WEBHOOK_SECRET is not configured")
        raise ConfigurationError("Clerk webhook secret is not configured")

    if not verify_svix_signature(payload, svix_id, svix_timestamp, svix_signature, settings.CLERK_WEBHOOK_SECRET):
        webhook_events_counter.labels(provider="clerk", event_type="unknown", status="invalid_signature").inc()
        raise WebhookVerificationError("Webhook verification failed")

    try:
        event = json.loads(payload)
    except ValueError:
        raise WebhookVerificationError("Invalid webhook payload")

    event_type = event.get("type", "unknown")
    data = event.get("data") or {}
    webhook_logger.info(f"Processing Clerk webhook: {event_type} (svix-id={svix_id})")

    handler = EVENT_HANDLERS.get(event_type)
    if not handler:
        webhook_events_counter.labels(provider="clerk", event_type=event_type, status="ignored").inc()
        return {"success": True}

    try:
        handler(data, db)
    except Exception:
        db.rollback()
        webhook_events_counter.labels(provider="clerk", event_type=event_type, status="error").inc()
        raise

    webhook_events_counter.labels(provider="clerk", event_type=event_type, status="success").inc()
    return {"success": True}
