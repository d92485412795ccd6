"""Admin API routes: deleted-user archive"""
import json
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from mindsync.core.config import settings
from mindsync.core.errors import AppError, BadRequestError
from mindsync.core.security import require_admin
from mindsync.db.session import get_db
from mindsync.models.deleted_user import DELETION_SOURCES
from mindsync.services.archive_service import get_deleted_user_stats, list_deleted_users, serialize_deleted_user
from mindsync.utils.dates import parse_iso_date

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = logging.getLogger(__name__)


def _parse_date_param(name: str, value: Optional[str]):
    try:
        return parse_iso_date(value)
    except ValueError:
        raise BadRequestError(f"Invalid {name}: {value}", details="Expected an ISO 8601 date")


@router.head("/deleted-users")
def deleted_users_summary(admin_id: str = Depends(require_admin), db: Session = Depends(get_db)):
    """Archive totals in response headers, no body"""
    try:
        stats = get_deleted_user_stats(db)
    except Exception as e:
        logger.error(f"Error fetching deleted-user stats: {e}", exc_info=True)
        return Response(status_code=500)

    return Response(
        status_code=200,
        headers={
            "X-Total-Deleted": str(stats["totalDeleted"]),
            "X-By-Source": json.dumps(stats["bySource"]),
            "X-Content-Type-Options": "nosniff",
        }
    )


@router.get("/deleted-users")
def get_deleted_users(
    limit: int = Query(50),
    skip: int = Query(0, ge=0),
    sort_by: str = Query("deleted_at", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    from_date: Optional[str] = Query(None, alias="fromDate"),
    to_date: Optional[str] = Query(None, alias="toDate"),
    source: Optional[str] = Query(None),
    include_stats: bool = Query(False, alias="stats"),
    admin_id: str = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """List archived users (admin only)

    ``limit`` is clamped to ARCHIVE_MAX_PAGE_SIZE; the clamped value is what
    ``pagination.limit`` reports.
    """
    limit = max(1, min(limit, settings.ARCHIVE_MAX_PAGE_SIZE))
    if sort_order not in ("asc", "desc"):
        raise BadRequestError(f"Invalid sortOrder: {sort_order}", details="Expected 'asc' or 'desc'")
    if source and source not in DELETION_SOURCES:
        raise BadRequestError(f"Invalid source: {source}", details=f"Expected one of: {', '.join(DELETION_SOURCES)}")

    try:
        page = list_deleted_users(
            db,
            limit=limit,
            skip=skip,
            sort_by=sort_by,
            sort_order=sort_order,
            from_date=_parse_date_param("fromDate", from_date),
            to_date=_parse_date_param("toDate", to_date),
            deletion_source=source
        )
        response = {
            "users": [serialize_deleted_user(record) for record in page["records"]],
            "pagination": {
                "limit": limit,
                "skip": skip,
                "total": page["total"],
                "hasMore": skip + len(page["records"]) < page["total"]
            }
        }
        if include_stats:
            response["stats"] = get_deleted_user_stats(db)
        return response
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error fetching deleted users: {e}", exc_info=True)
        raise AppError("Error fetching deleted users", status_code=500)
