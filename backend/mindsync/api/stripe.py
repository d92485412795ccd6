"""Stripe checkout and customer portal endpoints"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from mindsync.core.errors import AppError
from mindsync.core.security import require_auth
from mindsync.db.session import get_db
from mindsync.schemas.billing import CheckoutSessionRequest, PortalSessionRequest
from mindsync.services.stripe_service import create_checkout_session, create_portal_session

router = APIRouter(prefix="/api/stripe", tags=["billing"])
logger = logging.getLogger(__name__)


@router.post("/create-checkout-session")
def create_checkout_session_route(
    checkout_request: CheckoutSessionRequest,
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Create a Stripe Checkout session for the signed-in user"""
    try:
        return create_checkout_session(
            user_id,
            checkout_request.price_id,
            checkout_request.success_url,
            checkout_request.cancel_url,
            db
        )
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error creating checkout session for user {user_id}: {e}", exc_info=True)
        raise AppError(str(e) or "Error creating checkout session", status_code=500)


@router.post("/create-portal-session")
def create_portal_session_route(
    portal_request: PortalSessionRequest,
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Create a Stripe billing portal session for the signed-in user"""
    try:
        return create_portal_session(user_id, portal_request.return_url, db)
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error creating portal session for user {user_id}: {e}", exc_info=True)
        raise AppError("Error creating customer portal session", status_code=500)
