"""Relevance gate — decides whether a candidate recipient gets a notification.

Learn: The scoring model is an external collaborator. This package defines
its contract (RelevanceGate) and the part the pipeline owns: the accept
threshold and how slow or broken gates are treated (RelevancePolicy).
"""

from ripple.relevance.gate import (
    AcceptAllRelevanceGate,
    RandomRelevanceGate,
    RelevanceDecision,
    RelevanceGate,
    RelevancePolicy,
    RelevanceRequest,
    build_gate,
)

__all__ = [
    "AcceptAllRelevanceGate",
    "RandomRelevanceGate",
    "RelevanceDecision",
    "RelevanceGate",
    "RelevancePolicy",
    "RelevanceRequest",
    "build_gate",
]
