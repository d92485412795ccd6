"""Listening sessions: recording completed sessions and computing usage statistics"""
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from mindsync.core.errors import BadRequestError, NotFoundError
from mindsync.models.listening_session import ListeningSession
from mindsync.models.user import CATEGORIES, default_stats
from mindsync.services.user_service import get_user_by_clerk_id
from mindsync.utils.dates import ensure_utc, isoformat_utc

logger = logging.getLogger(__name__)


def compute_streak(session_days: Iterable[date], today: Optional[date] = None) -> int:
    """Consecutive UTC days with at least one session.

    The run ends today, or yesterday when nothing has been recorded today yet.
    """
    days = set(session_days)
    if not days:
        return 0

    today = today or datetime.now(timezone.utc).date()
    current = today if today in days else today - timedelta(days=1)

    streak = 0
    while current in days:
        streak += 1
        current -= timedelta(days=1)
    return streak


def record_session(user_id: str, category: str, duration: int, db: Session) -> ListeningSession:
    """Store a completed session and refresh the user's denormalised stats.

    Raises:
        BadRequestError: Unknown category or non-positive duration
        NotFoundError: The user does not exist
    """
    if category not in CATEGORIES:
        raise BadRequestError(f"Invalid category: {category}", details=f"Expected one of: {', '.join(CATEGORIES)}")
    if duration is None or duration <= 0:
        raise BadRequestError("Duration must be a positive number of minutes.")

    user = get_user_by_clerk_id(user_id, db)
    if not user:
        raise NotFoundError("User not found.")

    now = datetime.now(timezone.utc)
    session = ListeningSession(user_id=user_id, category=category, duration=duration, completed_at=now, created_at=now)
    db.add(session)
    db.flush()

    session_days = [
        ensure_utc(completed_at).date()
        for (completed_at,) in db.query(ListeningSession.completed_at).filter(ListeningSession.user_id == user_id)
    ]

    # JSON columns only persist on reassignment
    stats = dict(default_stats(), **(user.stats or {}))
    categories_usage = dict(stats.get("categories_usage") or {})
    categories_usage[category] = categories_usage.get(category, 0) + 1
    stats.update({
        "total_sessions_completed": stats.get("total_sessions_completed", 0) + 1,
        "total_minutes_listened": stats.get("total_minutes_listened", 0) + duration,
        "categories_usage": categories_usage,
        "streak_days": compute_streak(session_days, now.date()),
        "last_session_at": now.isoformat(),
    })
    user.stats = stats
    user.updated_at = now

    db.commit()
    db.refresh(session)
    logger.info(f"Recorded {duration}min {category} session for user {user_id}")
    return session


def get_session_stats(user_id: str, db: Session) -> Dict[str, Any]:
    """Aggregate statistics over all of a user's sessions"""
    sessions = (
        db.query(ListeningSession)
        .filter(ListeningSession.user_id == user_id)
        .order_by(ListeningSession.completed_at.desc())
        .all()
    )

    category_counts = {category: 0 for category in CATEGORIES}
    category_minutes = {category: 0 for category in CATEGORIES}
    total_minutes = 0
    session_days = set()

    for session in sessions:
        total_minutes += session.duration
        category_counts[session.category] = category_counts.get(session.category, 0) + 1
        category_minutes[session.category] = category_minutes.get(session.category, 0) + session.duration
        session_days.add(ensure_utc(session.completed_at).date())

    return {
        "totalSessions": len(sessions),
        "totalMinutes": total_minutes,
        "categoryCounts": category_counts,
        "categoryMinutes": category_minutes,
        "streakDays": compute_streak(session_days),
        "lastSessionDate": isoformat_utc(sessions[0].completed_at) if sessions else None,
    }


def serialize_session(session: ListeningSession) -> Dict[str, Any]:
    return {
        "id": str(session.id),
        "category": session.category,
        "duration": session.duration,
        "completedAt": isoformat_utc(session.completed_at),
    }
