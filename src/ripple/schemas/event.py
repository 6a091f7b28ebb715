"""Pydantic schemas for the event ingestion endpoint."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ripple.events.envelope import MAX_ID_LENGTH, EventEnvelope


class EventPublishRequest(EventEnvelope):
    """An envelope plus an optional explicit topic.

    Unlike the bare envelope, targetId is required here: the API rejects
    unroutable events up front instead of reporting published=false.
    """
    target_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    topic: Optional[str] = None

    def envelope(self) -> EventEnvelope:
        return EventEnvelope.model_validate(self.model_dump(exclude={"topic"}))


class EventPublishResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    published: bool
    topic: str
    event_id: Optional[str] = None
