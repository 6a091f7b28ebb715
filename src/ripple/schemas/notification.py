"""Pydantic schemas for notifications.

Learn: Clients read notifications in camelCase (refId, isRead, createdAt),
both from the REST API and from real-time pushes. NotificationRead is the
single shape for both, so a pushed notification and a listed one look the
same to the frontend.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, AliasGenerator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class NotificationType(str, Enum):
    FOLLOW = "follow"
    LIKE = "like"
    COMMENT = "comment"
    MENTION = "mention"
    POST = "post"
    SYSTEM = "system"
    NEW_POST = "new_post"
    POST_LIKE = "post_like"


class RefModel(str, Enum):
    POST = "Post"
    USER = "User"
    COMMENT = "Comment"


_camel_out = ConfigDict(
    from_attributes=True,
    populate_by_name=True,
    alias_generator=AliasGenerator(serialization_alias=to_camel),
)


# ─── Read (platform → client) ───────────────────────────


class NotificationRead(BaseModel):
    """A persisted notification as clients see it."""

    model_config = _camel_out

    id: uuid.UUID
    recipient: str = Field(validation_alias=AliasChoices("recipient_id", "recipient"))
    sender: Optional[str] = Field(
        None, validation_alias=AliasChoices("sender_id", "sender")
    )
    type: NotificationType
    message: str
    ref_id: str
    ref_model: RefModel
    is_read: bool
    relevance_score: float
    metadata: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("meta", "metadata")
    )
    created_at: datetime

    def to_push(self) -> dict[str, Any]:
        """JSON-ready dict for real-time delivery."""
        return self.model_dump(mode="json", by_alias=True)


class NotificationList(BaseModel):
    model_config = _camel_out

    notifications: list[NotificationRead]
    unread_count: int
    total: int
    limit: int
    offset: int


class MarkAllReadResult(BaseModel):
    updated: int
