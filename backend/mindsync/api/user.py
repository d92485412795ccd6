"""User profile, preferences and listening-session endpoints"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from mindsync.core.errors import AppError, BadRequestError, NotFoundError
from mindsync.core.security import require_auth
from mindsync.db.session import get_db
from mindsync.schemas.users import ListeningSessionCreate, PreferencesUpdate
from mindsync.services import listening_service, user_service
from mindsync.services.subscription_service import get_subscription_by_user_id, serialize_subscription
from mindsync.utils.dates import isoformat_utc

router = APIRouter(prefix="/api/user", tags=["user"])
logger = logging.getLogger(__name__)

DEFAULT_PREFERENCES = {
    "preferredDuration": 30,
    "volume": 80,
    "interfaceTheme": "dark",
    "notificationsEnabled": True,
    "weeklyReportEnabled": True,
}


def _serialize_stats(stats: dict) -> dict:
    stats = stats or {}
    return {
        "totalSessionsCompleted": stats.get("total_sessions_completed", 0),
        "totalMinutesListened": stats.get("total_minutes_listened", 0),
        "streakDays": stats.get("streak_days", 0),
        "categoriesUsage": stats.get("categories_usage") or {"focus": 0, "relax": 0, "sleep": 0},
        "lastSessionAt": stats.get("last_session_at"),
    }


@router.get("/profile")
def get_profile(user_id: str = Depends(require_auth), db: Session = Depends(get_db)):
    """User record combined with the subscription summary"""
    try:
        user = user_service.get_user_by_clerk_id(user_id, db)
        if not user:
            raise NotFoundError("User not found in the database.")

        subscription = get_subscription_by_user_id(user_id, db)
        return {
            "user": {
                "id": str(user.id),
                "clerkId": user.clerk_id,
                "email": user.email,
                "name": user.name or "",
                "plan": user.plan or "free",
                "preferences": user.preferences or dict(DEFAULT_PREFERENCES),
                "stats": _serialize_stats(user.stats),
                "createdAt": isoformat_utc(user.created_at),
            },
            "subscription": serialize_subscription(subscription)
        }
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error fetching profile for user {user_id}: {e}", exc_info=True)
        raise AppError("Error fetching user profile", status_code=500)


@router.put("/preferences")
def update_preferences(
    update: PreferencesUpdate,
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Merge the given keys into the stored preferences"""
    if update.preferences is None:
        raise BadRequestError("A valid preferences object is required.")

    try:
        user = user_service.update_preferences(user_id, update.preferences, db)
        if not user:
            raise NotFoundError("User not found in the database.")
        return {"success": True, "preferences": user.preferences}
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error updating preferences for user {user_id}: {e}", exc_info=True)
        raise AppError("Error updating user preferences", status_code=500)


@router.post("/sessions", status_code=201)
def create_session(
    session_request: ListeningSessionCreate,
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Record a completed listening session"""
    try:
        session = listening_service.record_session(user_id, session_request.category, session_request.duration, db)
        return {"success": True, "session": listening_service.serialize_session(session)}
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error recording session for user {user_id}: {e}", exc_info=True)
        raise AppError("Error recording listening session", status_code=500)


@router.get("/sessions/stats")
def get_session_stats(user_id: str = Depends(require_auth), db: Session = Depends(get_db)):
    try:
        return {"stats": listening_service.get_session_stats(user_id, db)}
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error computing session stats for user {user_id}: {e}", exc_info=True)
        raise AppError("Error fetching session statistics", status_code=500)
