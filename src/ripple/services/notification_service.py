"""Notification service — what recipients do with their notifications.

Learn: Reading is plain CRUD over the store. Marking read also publishes
notification.read / notification.read_all to the bus so other consumers
(badges, analytics) can follow along. Those publishes degrade silently:
the row is committed first, and a bus outage never fails the request.
"""

import uuid
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from ripple.bus.publisher import EventPublisher
from ripple.db.models import Notification
from ripple.events.types import (
    NOTIFICATION_EVENTS,
    NOTIFICATION_READ,
    NOTIFICATION_READ_ALL,
    TargetType,
)
from ripple.services.notification_store import NotificationStore

logger = structlog.get_logger()


class NotificationNotFoundError(Exception):
    """Raised when a notification is not found."""


class NotificationAccessDeniedError(Exception):
    """Raised when a user touches a notification addressed to someone else."""


class NotificationService:
    """Recipient-facing notification operations."""

    def __init__(self, db: AsyncSession, publisher: Optional[EventPublisher] = None):
        self.db = db
        self.store = NotificationStore(db)
        self.publisher = publisher

    async def list_notifications(
        self,
        user_id: str,
        *,
        is_read: Optional[bool] = None,
        type: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict:
        """Page of notifications plus unread and total counts."""
        notifications = await self.store.list_for_recipient(
            user_id, is_read=is_read, type=type, limit=limit, offset=offset
        )
        return {
            "notifications": notifications,
            "unread_count": await self.store.count(user_id, is_read=False),
            "total": await self.store.count(user_id, is_read=is_read, type=type),
            "limit": limit,
            "offset": offset,
        }

    async def mark_read(self, notification_id: uuid.UUID, user_id: str) -> Notification:
        notification = await self.store.get(notification_id)
        if notification is None:
            raise NotificationNotFoundError(str(notification_id))
        if notification.recipient_id != user_id:
            raise NotificationAccessDeniedError(
                f"Notification {notification_id} does not belong to user {user_id}"
            )

        changed = await self.store.mark_read(notification)
        await self.db.commit()

        if changed:
            await self._publish(
                NOTIFICATION_READ,
                actor_id=user_id,
                target_id=str(notification.id),
                payload={"notificationType": notification.type},
            )
        return notification

    async def mark_all_read(self, user_id: str) -> int:
        updated = await self.store.mark_all_read(user_id)
        await self.db.commit()

        await self._publish(
            NOTIFICATION_READ_ALL,
            actor_id=user_id,
            target_id=user_id,
            target_type=TargetType.USER,
            payload={"count": updated},
        )
        return updated

    async def _publish(
        self,
        event_type: str,
        *,
        actor_id: str,
        target_id: str,
        payload: dict,
        target_type: TargetType = TargetType.NOTIFICATION,
    ) -> None:
        if self.publisher is None:
            return
        published = await self.publisher.publish_event(
            event_type,
            actor_id=actor_id,
            target_id=target_id,
            target_type=target_type,
            payload=payload,
            topic=NOTIFICATION_EVENTS,
        )
        if not published:
            logger.warning("notifications.event_not_published", event_type=event_type, target_id=target_id)
