"""
signals.py - The records that flow through one resolution.

=============================================================================
LIFECYCLE OF A QUERY
=============================================================================

    Query ──► RuleMatcher ─────────┐
          ├─► VectorClassifier ────┼──► Candidates ──► HybridScorer ──► Decision
          └─► LLM classifier ──────┘

Every record here is a frozen dataclass. Once a classifier produces a
Candidate, nobody mutates it; once the scorer produces a Decision, nobody
mutates it. That immutability is what lets the scorer be a pure function of
its inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CandidateSource(str, Enum):
    """Where a candidate came from. The string value is what appears in config."""

    RULE = "rule"
    VECTOR = "vector"
    LLM = "llm"

    @property
    def trust_rank(self) -> int:
        """Fixed trust ordering used for tie-breaks: llm > vector > rule."""
        return _TRUST_RANK[self]


# Higher = more trusted.
_TRUST_RANK: Dict[CandidateSource, int] = {
    CandidateSource.RULE: 0,
    CandidateSource.VECTOR: 1,
    CandidateSource.LLM: 2,
}


@dataclass(frozen=True)
class Query:
    """
    A user query as it arrived.

    session_id is opaque: it is only ever used to scope episodic memory.
    """

    text: str
    received_at: datetime
    session_id: Optional[str] = None

    @classmethod
    def create(cls, text: str, session_id: Optional[str] = None) -> "Query":
        return cls(text=text, received_at=utc_now(), session_id=session_id)


@dataclass(frozen=True)
class Candidate:
    """
    One classifier's proposed intent for one query.

    confidence must already be in [0, 1]. Classifiers that talk to services
    reporting unbounded scores clamp before building a Candidate.
    """

    source: CandidateSource
    intent_label: str
    confidence: float
    latency_ms: int = 0

    def __post_init__(self) -> None:
        if not self.intent_label:
            raise ValueError("candidate intent_label must be non-empty")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"candidate confidence out of range: {self.confidence!r}")
        # Accept plain strings ("llm") as well as the enum.
        object.__setattr__(self, "source", CandidateSource(self.source))

    def sort_key(self) -> Tuple[float, int, str]:
        """Descending confidence, then most trusted source, then label."""
        return (-self.confidence, -self.source.trust_rank, self.intent_label)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.value,
            "intent": self.intent_label,
            "confidence": self.confidence,
            "latency_ms": self.latency_ms,
        }


@dataclass(frozen=True)
class Decision:
    """
    The scorer's verdict for one query.

    final_intent is None when nothing resolved (zero candidates). That is the
    documented "unresolved" outcome; the caller falls back to asking the user
    to clarify.

    contributing_candidates holds every candidate the scorer saw, sorted by
    descending individual confidence, not just the winner.
    """

    final_intent: Optional[str]
    confidence: float
    contributing_candidates: Tuple[Candidate, ...] = field(default_factory=tuple)
    decided_at: datetime = field(default_factory=utc_now)

    @property
    def resolved(self) -> bool:
        return self.final_intent is not None

    def candidate_for(self, source: CandidateSource) -> Optional[Candidate]:
        for c in self.contributing_candidates:
            if c.source == source:
                return c
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "final_intent": self.final_intent,
            "confidence": self.confidence,
            "decided_at": self.decided_at.isoformat(),
            "candidates": [c.to_dict() for c in self.contributing_candidates],
        }
