"""Notification API — recipients list and acknowledge their notifications.

Learn: Routes for the read side of the pipeline:
- GET  /users/:id/notifications            → page + unread count
- POST /notifications/:id/read?user_id=    → mark one read
- POST /users/:id/notifications/read-all   → mark all read

User ids are caller-supplied; authenticating them is another service's job.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ripple.api.deps import get_publisher
from ripple.bus.publisher import EventPublisher
from ripple.db.engine import get_db
from ripple.schemas.notification import (
    MarkAllReadResult,
    NotificationList,
    NotificationRead,
    NotificationType,
)
from ripple.services.notification_service import (
    NotificationAccessDeniedError,
    NotificationNotFoundError,
    NotificationService,
)

router = APIRouter()


def _get_service(
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
) -> NotificationService:
    return NotificationService(db=db, publisher=publisher)


@router.get("/users/{user_id}/notifications", response_model=NotificationList)
async def list_notifications(
    user_id: str,
    is_read: Optional[bool] = Query(None, description="Filter by read state"),
    type: Optional[NotificationType] = Query(None, description="Filter by notification type"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    svc: NotificationService = Depends(_get_service),
):
    """List a user's notifications, newest first."""
    return await svc.list_notifications(
        user_id,
        is_read=is_read,
        type=type.value if type else None,
        limit=limit,
        offset=offset,
    )


@router.post("/notifications/{notification_id}/read", response_model=NotificationRead)
async def mark_notification_read(
    notification_id: uuid.UUID,
    user_id: str = Query(..., description="The recipient marking it read"),
    svc: NotificationService = Depends(_get_service),
):
    """Mark one notification as read."""
    try:
        return await svc.mark_read(notification_id, user_id)
    except NotificationNotFoundError:
        raise HTTPException(status_code=404, detail="Notification not found")
    except NotificationAccessDeniedError:
        raise HTTPException(status_code=403, detail="Not authorized")


@router.post("/users/{user_id}/notifications/read-all", response_model=MarkAllReadResult)
async def mark_all_notifications_read(
    user_id: str,
    svc: NotificationService = Depends(_get_service),
):
    """Mark every unread notification of a user as read."""
    updated = await svc.mark_all_read(user_id)
    return MarkAllReadResult(updated=updated)
