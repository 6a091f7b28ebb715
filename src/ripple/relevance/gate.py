"""Relevance gate contract and the pipeline's accept policy."""

import asyncio
import math
import random
from dataclasses import dataclass
from typing import Optional, Protocol

import structlog

logger = structlog.get_logger()

SCORE_MIN = 0.0
SCORE_MAX = 1.0


@dataclass(frozen=True)
class RelevanceRequest:
    """What the gate gets to see about one candidate."""
    notification_type: str
    recipient_id: str
    actor_id: str


@dataclass(frozen=True)
class RelevanceDecision:
    accepted: bool
    score: Optional[float]
    reason: str = "scored"


class RelevanceGate(Protocol):
    """Scores an (event, candidate recipient) pair in [SCORE_MIN, SCORE_MAX].

    Must be free of side effects the pipeline relies on. May be slow or fail;
    RelevancePolicy deals with both.
    """

    async def score(self, request: RelevanceRequest) -> float: ...


class RandomRelevanceGate:
    """Development placeholder: every candidate scores between 0.5 and 1.0."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    async def score(self, request: RelevanceRequest) -> float:
        return 0.5 + self._rng.random() * 0.5


class AcceptAllRelevanceGate:
    """Scores everything at the top of the range."""

    async def score(self, request: RelevanceRequest) -> float:
        return SCORE_MAX


_GATES = {
    "random": RandomRelevanceGate,
    "accept_all": AcceptAllRelevanceGate,
}


def build_gate(name: str) -> RelevanceGate:
    """Resolve the RIPPLE_RELEVANCE_GATE setting to a gate instance."""
    try:
        return _GATES[name]()
    except KeyError:
        raise ValueError(
            f"Unknown relevance gate {name!r}. Options: {', '.join(sorted(_GATES))}"
        )


class RelevancePolicy:
    """Threshold + timeout around a gate.

    Accept when score >= threshold. A gate that times out, raises, or
    returns something that is not a number rejects the candidate; it never
    fails the batch.
    """

    def __init__(
        self,
        gate: RelevanceGate,
        threshold: float = 0.5,
        timeout: Optional[float] = 2.0,
    ):
        if not SCORE_MIN <= threshold <= SCORE_MAX:
            raise ValueError(f"threshold must be within [{SCORE_MIN}, {SCORE_MAX}]")
        self.gate = gate
        self.threshold = threshold
        self.timeout = timeout

    async def evaluate(self, request: RelevanceRequest) -> RelevanceDecision:
        log = logger.bind(
            recipient_id=request.recipient_id,
            notification_type=request.notification_type,
        )
        try:
            raw = await asyncio.wait_for(self.gate.score(request), timeout=self.timeout)
        except asyncio.TimeoutError:
            log.warning("relevance.timeout", timeout=self.timeout)
            return RelevanceDecision(accepted=False, score=None, reason="timeout")
        except Exception as e:
            log.warning("relevance.gate_failed", error=str(e))
            return RelevanceDecision(accepted=False, score=None, reason="error")

        try:
            score = float(raw)
        except (TypeError, ValueError):
            log.warning("relevance.invalid_score", score=repr(raw))
            return RelevanceDecision(accepted=False, score=None, reason="invalid")
        if math.isnan(score):
            log.warning("relevance.invalid_score", score="nan")
            return RelevanceDecision(accepted=False, score=None, reason="invalid")

        score = min(max(score, SCORE_MIN), SCORE_MAX)
        accepted = score >= self.threshold
        log.debug("relevance.scored", score=score, accepted=accepted)
        return RelevanceDecision(
            accepted=accepted,
            score=score,
            reason="scored" if accepted else "below_threshold",
        )
