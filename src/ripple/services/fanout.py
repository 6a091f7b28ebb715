"""Fan-out service — one event in, zero or more notifications out.

Learn: Each recipient is its own unit of work:

  relevance gate (post.create only) → persist (own session) → push to user:<id>

No transaction spans the batch. If follower B's gate call times out or
B's insert fails, followers A and C still get their notifications. A
failed insert is then reported as FanOutIncomplete, a RetryableError, so
the consumer leaves the entry pending and delivers it again later.

Redelivery: the bus is at-least-once. Every notification carries a
dedup_key built from the event's idempotency key and the recipient, so
handling the same envelope twice creates (and pushes) exactly one row.

Event handling:
- user.follow  → the followed user, always (direct action, no gate)
- post.create  → every follower in payload.followers that clears the gate
- post.like    → the post owner, unless they liked their own post
- post.comment → the post owner, unless they commented on their own post
- post.mention → every mentioned user except the actor
Anything else is logged and dropped.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ripple.bus.consumer import RetryableError
from ripple.db.models import Notification
from ripple.events.envelope import MAX_ID_LENGTH, EventEnvelope
from ripple.events.types import (
    POST_COMMENT,
    POST_CREATE,
    POST_LIKE,
    POST_MENTION,
    USER_FOLLOW,
)
from ripple.realtime.bridge import room_for_user
from ripple.realtime.sink import NotificationSink
from ripple.relevance import RelevancePolicy, RelevanceRequest
from ripple.schemas.notification import NotificationRead, NotificationType, RefModel
from ripple.services.notification_store import NotificationStore

logger = structlog.get_logger()

DIRECT_ACTION_SCORE = 1.0


class FanOutIncomplete(RetryableError):
    """Some recipients of an event could not be persisted."""

    def __init__(self, event_type: str, failed: list[str], created: list[Notification]):
        super().__init__(f"{len(failed)} recipient(s) of {event_type} not persisted")
        self.failed = failed
        self.created = created


@dataclass(frozen=True)
class Candidate:
    """One prospective notification, before gate and persistence."""
    recipient_id: str
    type: NotificationType
    message: str
    ref_id: str
    ref_model: RefModel
    gated: bool = False


def actor_name(payload: dict[str, Any]) -> str:
    return (
        payload.get("actorDisplayName")
        or payload.get("actorUsername")
        or "Someone"
    )


def _unique_ids(values: Any, exclude: Optional[str] = None) -> list[str]:
    """Stringify, drop blanks and exclude, keep first-seen order."""
    if not isinstance(values, (list, tuple, set)):
        return []
    seen: set[str] = set()
    ids: list[str] = []
    for value in values:
        if value is None or isinstance(value, (dict, list)):
            continue
        user_id = str(value)
        if not user_id or user_id == exclude or user_id in seen:
            continue
        seen.add(user_id)
        ids.append(user_id)
    return ids


def _storable(candidate: Candidate) -> bool:
    """Ids longer than the id columns would fail the insert on every retry."""
    if len(candidate.recipient_id) <= MAX_ID_LENGTH and len(candidate.ref_id) <= MAX_ID_LENGTH:
        return True
    logger.warning(
        "fanout.invalid_recipient",
        recipient_id=candidate.recipient_id[:MAX_ID_LENGTH],
        reason="id too long",
    )
    return False


class FanOutService:
    """Turns bus events into persisted, pushed notifications.

    Usage:
        fanout = FanOutService(async_session_factory, policy, sink)
        consumer = BusConsumer(redis, fanout.handle, ...)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: RelevancePolicy,
        sink: NotificationSink,
        concurrency: int = 16,
    ):
        self._session_factory = session_factory
        self._policy = policy
        self._sink = sink
        self._semaphore = asyncio.Semaphore(concurrency)
        self._planners: dict[str, Callable[[EventEnvelope], list[Candidate]]] = {
            USER_FOLLOW: self._plan_follow,
            POST_CREATE: self._plan_post_create,
            POST_LIKE: self._plan_post_like,
            POST_COMMENT: self._plan_post_comment,
            POST_MENTION: self._plan_post_mention,
        }

    async def handle(self, topic: str, envelope: EventEnvelope) -> list[Notification]:
        """Process one event. Returns the notifications created by this call.

        Raises FanOutIncomplete once every recipient has been attempted if
        any of them could not be persisted.
        """
        log = logger.bind(
            topic=topic,
            event_type=envelope.event_type,
            event_id=envelope.idempotency_key,
            target_id=envelope.target_id,
        )
        planner = self._planners.get(envelope.event_type)
        if planner is None:
            log.info("fanout.unhandled_event")
            return []

        candidates = [c for c in planner(envelope) if _storable(c)]
        if not candidates:
            log.info("fanout.no_recipients")
            return []

        results = await asyncio.gather(
            *(self._deliver(envelope, candidate) for candidate in candidates),
            return_exceptions=True,
        )
        created = [r for r in results if isinstance(r, Notification)]
        failed = [
            candidate.recipient_id
            for candidate, result in zip(candidates, results)
            if isinstance(result, BaseException)
        ]
        log.info("fanout.completed", candidates=len(candidates), created=len(created), failed=len(failed))
        if failed:
            raise FanOutIncomplete(envelope.event_type, failed, created)
        return created

    # ─── Planning: event → candidates ────────────────────

    def _plan_follow(self, envelope: EventEnvelope) -> list[Candidate]:
        if not envelope.target_id:
            logger.warning("fanout.invalid_event", event_type=envelope.event_type, reason="missing targetId")
            return []
        return [Candidate(
            recipient_id=envelope.target_id,
            type=NotificationType.FOLLOW,
            message=f"{actor_name(envelope.payload)} started following you",
            ref_id=envelope.actor_id,
            ref_model=RefModel.USER,
        )]

    def _plan_post_create(self, envelope: EventEnvelope) -> list[Candidate]:
        payload = envelope.payload
        post_id = str(payload.get("postId") or envelope.target_id or "")
        if not post_id:
            logger.warning("fanout.invalid_event", event_type=envelope.event_type, reason="missing post id")
            return []
        title = payload.get("postTitle") or payload.get("title") or ""
        message = f'{actor_name(payload)} published a new post: "{title}"'
        return [
            Candidate(
                recipient_id=follower_id,
                type=NotificationType.NEW_POST,
                message=message,
                ref_id=post_id,
                ref_model=RefModel.POST,
                gated=True,
            )
            for follower_id in _unique_ids(payload.get("followers"), exclude=envelope.actor_id)
        ]

    def _post_owner(self, envelope: EventEnvelope) -> Optional[str]:
        owner = envelope.payload.get("postOwnerId") or envelope.payload.get("postAuthorId")
        if owner is None or owner == "":
            logger.warning("fanout.invalid_event", event_type=envelope.event_type, reason="missing postOwnerId")
            return None
        return str(owner)

    def _plan_post_like(self, envelope: EventEnvelope) -> list[Candidate]:
        owner = self._post_owner(envelope)
        if owner is None or owner == envelope.actor_id:
            return []
        payload = envelope.payload
        return [Candidate(
            recipient_id=owner,
            type=NotificationType.POST_LIKE,
            message=f'{actor_name(payload)} liked your post: "{payload.get("postTitle", "")}"',
            ref_id=str(payload.get("postId") or envelope.target_id),
            ref_model=RefModel.POST,
        )]

    def _plan_post_comment(self, envelope: EventEnvelope) -> list[Candidate]:
        owner = self._post_owner(envelope)
        if owner is None or owner == envelope.actor_id:
            return []
        payload = envelope.payload
        return [Candidate(
            recipient_id=owner,
            type=NotificationType.COMMENT,
            message=f'{actor_name(payload)} commented on your post: "{payload.get("postTitle", "")}"',
            ref_id=str(payload.get("commentId") or payload.get("postId") or envelope.target_id),
            ref_model=RefModel.COMMENT if payload.get("commentId") else RefModel.POST,
        )]

    def _plan_post_mention(self, envelope: EventEnvelope) -> list[Candidate]:
        payload = envelope.payload
        message = f"{actor_name(payload)} mentioned you in a post"
        return [
            Candidate(
                recipient_id=user_id,
                type=NotificationType.MENTION,
                message=message,
                ref_id=str(payload.get("postId") or envelope.target_id),
                ref_model=RefModel.POST,
            )
            for user_id in _unique_ids(payload.get("mentionedUserIds"), exclude=envelope.actor_id)
        ]

    # ─── Delivery: candidate → notification ──────────────

    async def _deliver(self, envelope: EventEnvelope, candidate: Candidate) -> Optional[Notification]:
        """Gate, persist and push one candidate. Only persistence errors escape."""
        async with self._semaphore:
            log = logger.bind(
                event_type=envelope.event_type,
                recipient_id=candidate.recipient_id,
                notification_type=candidate.type.value,
            )

            score = DIRECT_ACTION_SCORE
            if candidate.gated:
                decision = await self._policy.evaluate(RelevanceRequest(
                    notification_type=candidate.type.value,
                    recipient_id=candidate.recipient_id,
                    actor_id=envelope.actor_id,
                ))
                if not decision.accepted:
                    log.info("fanout.rejected_by_gate", score=decision.score, reason=decision.reason)
                    return None
                score = decision.score

            dedup_key = f"{envelope.event_type}:{envelope.idempotency_key}:{candidate.recipient_id}"
            try:
                notification, created = await self._persist(envelope, candidate, score, dedup_key)
            except Exception:
                log.exception("fanout.persist_failed")
                raise

            if not created:
                log.info("fanout.duplicate_skipped", notification_id=str(notification.id))
                return None

            log.info("fanout.notification_created", notification_id=str(notification.id), score=score)
            await self._push(notification)
            return notification

    async def _persist(
        self,
        envelope: EventEnvelope,
        candidate: Candidate,
        score: float,
        dedup_key: str,
    ) -> tuple[Notification, bool]:
        async with self._session_factory() as db:
            store = NotificationStore(db)
            notification, created = await store.create(
                recipient_id=candidate.recipient_id,
                sender_id=envelope.actor_id,
                type=candidate.type.value,
                message=candidate.message,
                ref_id=candidate.ref_id,
                ref_model=candidate.ref_model.value,
                relevance_score=score,
                metadata=self._metadata(envelope),
                dedup_key=dedup_key,
            )
            if created:
                await db.commit()
            return notification, created

    @staticmethod
    def _metadata(envelope: EventEnvelope) -> dict[str, Any]:
        payload = envelope.payload
        meta: dict[str, Any] = {
            "eventType": envelope.event_type,
            "eventId": envelope.idempotency_key,
        }
        for key in ("actorUsername", "actorDisplayName", "postTitle"):
            if payload.get(key):
                meta[key] = payload[key]
        return meta

    async def _push(self, notification: Notification) -> None:
        room = room_for_user(notification.recipient_id)
        try:
            data = NotificationRead.model_validate(notification).to_push()
            result = await self._sink.push(room, data)
        except Exception:
            logger.exception("fanout.push_failed", room=room)
            return
        if not result.success:
            logger.warning("fanout.push_failed", room=room, error=result.error)
        else:
            logger.debug("fanout.pushed", room=room, delivered=result.delivered)
