"""Event envelope — the record carried on the bus.

Learn: The wire format is camelCase JSON (eventType, actorId, targetId …)
because producers outside this codebase read and write it. Python code uses
snake_case attributes; pydantic aliases translate between the two.

targetId doubles as the partition key: events about the same entity land
on the same partition stream and are consumed in publish order.
"""

import hashlib
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ripple.events.types import TargetType


# Matches the width of the id columns notifications are stored with
MAX_ID_LENGTH = 64
MAX_EVENT_TYPE_LENGTH = 100


class MissingRoutingKeyError(ValueError):
    """Raised when an envelope has no targetId to partition on."""


def new_event_id() -> str:
    return uuid.uuid4().hex


class EventEnvelope(BaseModel):
    """Typed event message. Unknown event types are allowed on purpose;
    the consumer decides what to do with them."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    event_id: Optional[str] = Field(None, max_length=MAX_ID_LENGTH)
    event_type: str = Field(..., min_length=1, max_length=MAX_EVENT_TYPE_LENGTH)
    actor_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    target_id: Optional[str] = Field(None, max_length=MAX_ID_LENGTH)
    target_type: TargetType
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None

    @field_validator("actor_id", "target_id", "event_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        # ids arrive as ints, UUIDs or ObjectId-like strings
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, (int, uuid.UUID)) and not isinstance(value, bool):
            return str(value)
        return value

    @property
    def partition_key(self) -> str:
        """The routing key for the bus. Raises if targetId is missing."""
        if not self.target_id:
            raise MissingRoutingKeyError(
                f"Event {self.event_type!r} has no targetId to route on"
            )
        return self.target_id

    @property
    def idempotency_key(self) -> str:
        """Stable identity of this event across redeliveries."""
        if self.event_id:
            return self.event_id
        raw = "|".join([
            self.event_type,
            self.actor_id,
            self.target_id or "",
            self.timestamp.isoformat() if self.timestamp else "",
        ])
        return hashlib.sha1(raw.encode()).hexdigest()

    def stamped(self) -> "EventEnvelope":
        """Return a copy with eventId and timestamp filled in if absent."""
        update: dict[str, Any] = {}
        if not self.event_id:
            update["event_id"] = new_event_id()
        if self.timestamp is None:
            update["timestamp"] = datetime.now(timezone.utc)
        return self.model_copy(update=update) if update else self

    def to_wire(self) -> str:
        """Serialize to the camelCase JSON string stored on the bus."""
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_wire(cls, raw: str | bytes) -> "EventEnvelope":
        """Parse a bus entry. Raises ValidationError / ValueError on bad input."""
        if isinstance(raw, bytes):
            raw = raw.decode()
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Event envelope must be a JSON object")
        return cls.model_validate(data)
