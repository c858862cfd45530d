# routers/notifications.py — Administrator view over notification records
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from accounts import AccountStore
from auth import require_admin
from database import get_db_session
from models import NotificationType
from notifier import NotificationSink, get_notification_sink, list_notifications, delete_notifications_for
from policy import Actor, Action, authorize

router = APIRouter(prefix="/api/v1/notifications", tags=["Notifications"])


@router.get("")
async def list_all_notifications(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    authorize(user, Action.NOTIFICATION_ADMIN)
    items, pagination = await list_notifications(db, page=page, limit=limit)
    return {
        "success": True,
        "data": {"notifications": items, "pagination": pagination},
    }


@router.delete("/recipients/{user_id}")
async def delete_recipient_notifications(
    user_id: str,
    user: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    sink: NotificationSink = Depends(get_notification_sink),
):
    """Bulk-delete every notification addressed to one account"""
    authorize(user, Action.NOTIFICATION_ADMIN)
    # Orphaned ids are accepted; the delete simply matches nothing
    target = await AccountStore(db).get_by_id(user_id)
    label = (target.display_name or target.email) if target else user_id
    deleted = await delete_notifications_for(db, user_id)
    await sink.emit(
        user.id,
        f"Deleted {deleted} notification(s) of {label}",
        NotificationType.RECORDS_PURGED,
    )
    return {
        "success": True,
        "message": "Notifications deleted successfully",
        "data": {"deleted": deleted},
    }
