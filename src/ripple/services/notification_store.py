"""Notification store — persistence for notification rows.

Learn: Like the event store, this wraps one AsyncSession and never commits;
the caller owns the transaction. create() is idempotent on dedup_key: a
pre-check catches ordinary redeliveries, and the unique constraint catches
the race where two workers insert the same key at once.
"""

import uuid
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ripple.db.models import Notification


class NotificationStore:
    """CRUD for Notification rows, scoped to one session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        *,
        recipient_id: str,
        type: str,
        message: str,
        ref_id: str,
        ref_model: str,
        sender_id: Optional[str] = None,
        relevance_score: float = 1.0,
        metadata: Optional[dict[str, Any]] = None,
        dedup_key: Optional[str] = None,
    ) -> tuple[Notification, bool]:
        """Insert a notification. Returns (row, created).

        created is False when a row with the same dedup_key already exists;
        the existing row is returned instead.
        """
        if dedup_key:
            existing = await self.get_by_dedup_key(dedup_key)
            if existing is not None:
                return existing, False

        notification = Notification(
            recipient_id=recipient_id,
            sender_id=sender_id,
            type=type,
            message=message,
            ref_id=ref_id,
            ref_model=ref_model,
            relevance_score=relevance_score,
            meta=metadata or {},
            dedup_key=dedup_key,
        )
        self.db.add(notification)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            if dedup_key:
                existing = await self.get_by_dedup_key(dedup_key)
                if existing is not None:
                    return existing, False
            raise
        await self.db.refresh(notification)
        return notification, True

    async def get(self, notification_id: uuid.UUID) -> Optional[Notification]:
        return await self.db.get(Notification, notification_id)

    async def get_by_dedup_key(self, dedup_key: str) -> Optional[Notification]:
        result = await self.db.execute(
            select(Notification).where(Notification.dedup_key == dedup_key)
        )
        return result.scalars().first()

    async def list_for_recipient(
        self,
        recipient_id: str,
        *,
        is_read: Optional[bool] = None,
        type: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Notification]:
        """Newest first."""
        query = (
            select(Notification)
            .where(*self._filters(recipient_id, is_read, type))
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def count(
        self,
        recipient_id: str,
        *,
        is_read: Optional[bool] = None,
        type: Optional[str] = None,
    ) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(Notification)
            .where(*self._filters(recipient_id, is_read, type))
        )
        return result.scalar_one()

    async def mark_read(self, notification: Notification) -> bool:
        """Mark one notification read. Returns False if it already was."""
        if notification.is_read:
            return False
        notification.is_read = True
        await self.db.flush()
        return True

    async def mark_all_read(self, recipient_id: str) -> int:
        result = await self.db.execute(
            update(Notification)
            .where(
                Notification.recipient_id == recipient_id,
                Notification.is_read == False,  # noqa: E712
            )
            .values(is_read=True)
        )
        return result.rowcount or 0

    @staticmethod
    def _filters(
        recipient_id: str,
        is_read: Optional[bool],
        type: Optional[str],
    ) -> list:
        filters = [Notification.recipient_id == recipient_id]
        if is_read is not None:
            filters.append(Notification.is_read == is_read)
        if type:
            filters.append(Notification.type == type)
        return filters
