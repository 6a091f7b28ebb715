"""Event ingestion API — producers hand events to the bus over HTTP.

Learn: This is the "API handler → publisher" hop for services that cannot
talk to Redis directly. It answers 202 either way: a bus outage shows up
as published=false, never as an error, so the caller's own action (a
follow, a like) still succeeds.
"""

from fastapi import APIRouter, Depends, HTTPException

from ripple.api.deps import get_publisher
from ripple.bus.publisher import EventPublisher
from ripple.events.types import TOPICS, topic_for
from ripple.schemas.event import EventPublishRequest, EventPublishResponse

router = APIRouter()


@router.post("/events", response_model=EventPublishResponse, status_code=202)
async def publish_event(
    body: EventPublishRequest,
    publisher: EventPublisher = Depends(get_publisher),
):
    """Publish one event envelope to its topic."""
    topic = body.topic or topic_for(body.event_type)
    if topic is None:
        raise HTTPException(
            status_code=422,
            detail=f"No topic for event type {body.event_type!r}; pass one explicitly",
        )
    if topic not in TOPICS:
        raise HTTPException(status_code=422, detail=f"Unknown topic {topic!r}")

    envelope = body.envelope().stamped()
    published = await publisher.publish(topic, envelope)
    return EventPublishResponse(published=published, topic=topic, event_id=envelope.event_id)
