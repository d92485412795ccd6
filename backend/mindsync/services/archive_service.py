"""Deleted-user archive: snapshots taken before deletion, admin listing and aggregates"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import func, literal_column
from sqlalchemy.orm import Session

from mindsync.core.errors import BadRequestError
from mindsync.core.metrics import users_archived_counter
from mindsync.models.deleted_user import DELETION_SOURCES, DeletedUser
from mindsync.models.subscription import Subscription
from mindsync.models.user import User
from mindsync.utils.dates import isoformat_utc

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = {
    "deleted_at": DeletedUser.deleted_at,
    "created_at": DeletedUser.created_at,
    "email": DeletedUser.email,
    "plan": DeletedUser.plan,
}

# Query parameters arrive camelCased from the admin dashboard
SORT_ALIASES = {
    "deletedAt": "deleted_at",
    "createdAt": "created_at",
}


def get_deleted_user_by_clerk_id(clerk_id: str, db: Session) -> Optional[DeletedUser]:
    return db.query(DeletedUser).filter(DeletedUser.clerk_id == clerk_id).first()


def build_archive_record(
    user: User,
    subscription: Optional[Subscription],
    deletion_source: str = "user",
    deletion_reason: Optional[str] = None,
    feedback_data: Optional[Dict[str, Any]] = None,
) -> DeletedUser:
    """Snapshot of a live user. Payment history is never copied."""
    stats = user.stats or {}
    usage_stats = {
        "total_sessions_completed": stats.get("total_sessions_completed", 0),
        "total_minutes_listened": stats.get("total_minutes_listened", 0),
        "categories_usage": stats.get("categories_usage", {}),
    }

    subscription_info = None
    if subscription:
        subscription_info = {
            "plan": subscription.plan,
            "status": subscription.status,
            "cancel_reason": subscription.cancel_reason,
        }

    return DeletedUser(
        clerk_id=user.clerk_id,
        email=user.email,
        name=user.name,
        stripe_customer_id=user.stripe_customer_id,
        plan=user.plan,
        created_at=user.created_at,
        last_login_at=user.last_login_at,
        deleted_at=datetime.now(timezone.utc),
        usage_stats=usage_stats,
        subscription_info=subscription_info,
        deletion_reason=deletion_reason,
        deletion_source=deletion_source,
        feedback_data=feedback_data,
    )


def archive_deleted_user(
    user: User,
    subscription: Optional[Subscription],
    db: Session,
    deletion_source: str = "user",
    deletion_reason: Optional[str] = None,
    feedback_data: Optional[Dict[str, Any]] = None,
) -> DeletedUser:
    """Write the archive record and commit it.

    A retried deletion for the same Clerk id returns the existing record
    instead of writing a second one.
    """
    if deletion_source not in DELETION_SOURCES:
        raise ValueError(f"Invalid deletion source: {deletion_source}")

    existing = get_deleted_user_by_clerk_id(user.clerk_id, db)
    if existing:
        logger.info(f"Archive for {user.clerk_id} already exists (id={existing.id}), reusing it")
        return existing

    record = build_archive_record(user, subscription, deletion_source, deletion_reason, feedback_data)
    db.add(record)
    db.commit()
    db.refresh(record)

    users_archived_counter.labels(source=deletion_source).inc()
    logger.info(f"Archived user {user.clerk_id} (source={deletion_source})")
    return record


def _filtered_query(
    db: Session,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    deletion_source: Optional[str] = None,
):
    query = db.query(DeletedUser)
    if from_date:
        query = query.filter(DeletedUser.deleted_at >= from_date)
    if to_date:
        query = query.filter(DeletedUser.deleted_at <= to_date)
    if deletion_source:
        query = query.filter(DeletedUser.deletion_source == deletion_source)
    return query


def list_deleted_users(
    db: Session,
    limit: int = 100,
    skip: int = 0,
    sort_by: str = "deleted_at",
    sort_order: str = "desc",
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    deletion_source: Optional[str] = None,
) -> Dict[str, Any]:
    """Page through archive records.

    Returns:
        Dict with ``records`` (the page) and ``total`` (all matching rows)
    """
    sort_key = SORT_ALIASES.get(sort_by, sort_by)
    if sort_key not in SORTABLE_FIELDS:
        raise BadRequestError(f"Invalid sort field: {sort_by}", details=f"Allowed: {', '.join(SORTABLE_FIELDS)}")
    column = SORTABLE_FIELDS[sort_key]
    ordering = column.asc() if sort_order == "asc" else column.desc()

    query = _filtered_query(db, from_date, to_date, deletion_source)
    total = query.count()
    records = query.order_by(ordering, DeletedUser.id).offset(skip).limit(limit).all()
    return {"records": records, "total": total}


def _month_bucket(db: Session):
    """YYYY-MM of deleted_at, computed in UTC by the database"""
    if db.get_bind().dialect.name == "postgresql":
        return func.to_char(func.timezone(literal_column("'UTC'"), DeletedUser.deleted_at), literal_column("'YYYY-MM'"))
    # SQLite keeps the UTC wall time written by the model
    return func.strftime(literal_column("'%Y-%m'"), DeletedUser.deleted_at)


def get_deleted_user_stats(db: Session) -> Dict[str, Any]:
    """Archive aggregates: total, by reason, by source and by month"""
    total = db.query(func.count(DeletedUser.id)).scalar() or 0

    by_reason: Dict[str, int] = {}
    reason_rows = db.query(DeletedUser.deletion_reason, func.count(DeletedUser.id)) \
        .group_by(DeletedUser.deletion_reason).all()
    for reason, count in reason_rows:
        key = reason or "unknown"
        by_reason[key] = by_reason.get(key, 0) + count

    by_source = {source: 0 for source in DELETION_SOURCES}
    source_rows = db.query(DeletedUser.deletion_source, func.count(DeletedUser.id)) \
        .group_by(DeletedUser.deletion_source).all()
    for source, count in source_rows:
        by_source[source] = count

    month = _month_bucket(db).label("month")
    month_rows = db.query(month, func.count(DeletedUser.id)).group_by(month).order_by(month).all()

    return {
        "totalDeleted": total,
        "byReason": by_reason,
        "bySource": by_source,
        "byMonth": {bucket: count for bucket, count in month_rows if bucket},
    }


def serialize_deleted_user(record: DeletedUser) -> Dict[str, Any]:
    return {
        "id": str(record.id),
        "clerkId": record.clerk_id,
        "email": record.email,
        "name": record.name,
        "stripeCustomerId": record.stripe_customer_id,
        "plan": record.plan,
        "createdAt": isoformat_utc(record.created_at),
        "lastLoginAt": isoformat_utc(record.last_login_at),
        "deletedAt": isoformat_utc(record.deleted_at),
        "usageStats": record.usage_stats,
        "subscriptionInfo": record.subscription_info,
        "deletionReason": record.deletion_reason,
        "deletionSource": record.deletion_source,
        "feedbackData": record.feedback_data,
    }
