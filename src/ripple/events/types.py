"""Event type and topic constants.

Learn: Centralizing event types as constants prevents typos and
makes it easy to discover all event types in the system.
Topics are derived from the event type's domain prefix.
"""

from enum import Enum
from typing import Optional

# ─── Topics ──────────────────────────────────────────────

USER_EVENTS = "user-events"
POST_EVENTS = "post-events"
NOTIFICATION_EVENTS = "notification-events"

TOPICS = (USER_EVENTS, POST_EVENTS, NOTIFICATION_EVENTS)

# Topics the fan-out worker subscribes to
FANOUT_TOPICS = (USER_EVENTS, POST_EVENTS)

# ─── User events ─────────────────────────────────────────

USER_FOLLOW = "user.follow"
USER_UNFOLLOW = "user.unfollow"
USER_PROFILE_UPDATE = "user.profile.update"

# ─── Post events ─────────────────────────────────────────

POST_CREATE = "post.create"
POST_LIKE = "post.like"
POST_UNLIKE = "post.unlike"
POST_COMMENT = "post.comment"
POST_MENTION = "post.mention"

# ─── Notification events ─────────────────────────────────

NOTIFICATION_CREATED = "notification.created"
NOTIFICATION_READ = "notification.read"
NOTIFICATION_READ_ALL = "notification.read_all"

_TOPIC_BY_DOMAIN = {
    "user": USER_EVENTS,
    "post": POST_EVENTS,
    "notification": NOTIFICATION_EVENTS,
}


class TargetType(str, Enum):
    """Kind of entity an event is about."""

    USER = "User"
    POST = "Post"
    COMMENT = "Comment"
    NOTIFICATION = "Notification"


def topic_for(event_type: str) -> Optional[str]:
    """Map an event type to its topic by domain prefix ("post.like" → post-events)."""
    domain, _, _ = event_type.partition(".")
    return _TOPIC_BY_DOMAIN.get(domain)
