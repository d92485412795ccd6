"""Subscription status endpoint"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from mindsync.core.errors import AppError
from mindsync.core.security import require_auth
from mindsync.db.session import get_db
from mindsync.services.subscription_service import get_subscription_status

router = APIRouter(prefix="/api/subscription", tags=["subscriptions"])
logger = logging.getLogger(__name__)


@router.get("/get-status")
def get_status(user_id: str = Depends(require_auth), db: Session = Depends(get_db)):
    """Current subscription of the signed-in user, free plan when none is stored"""
    try:
        return {"subscription": get_subscription_status(user_id, db)}
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error fetching subscription status for user {user_id}: {e}", exc_info=True)
        raise AppError("Error fetching subscription status", status_code=500)
