"""Webhook endpoints for Clerk (identity) and Stripe (billing)"""
import logging
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from mindsync.core.errors import AppError, BadRequestError
from mindsync.db.session import get_db
from mindsync.services.clerk_service import process_clerk_webhook
from mindsync.services.stripe_service import process_stripe_webhook

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/clerk")
async def clerk_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Clerk user lifecycle events (Svix-signed)

    The body is read as raw bytes: the signature covers the exact payload.
    """
    payload = await request.body()

    try:
        return process_clerk_webhook(
            payload,
            request.headers.get("svix-id"),
            request.headers.get("svix-timestamp"),
            request.headers.get("svix-signature"),
            db
        )
    except AppError:
        raise
    except Exception as e:
        # 5xx makes Clerk redeliver the event
        logger.error(f"Unexpected error processing Clerk webhook: {e}", exc_info=True)
        raise AppError("Internal error while processing webhook", details=str(e), status_code=500)


@router.post("/stripe")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Stripe webhook events

    Every failure is answered with 400 so Stripe retries per its own policy.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        return process_stripe_webhook(payload, sig_header, db)
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Unexpected error processing Stripe webhook: {e}", exc_info=True)
        raise BadRequestError(f"Error: {e}")
