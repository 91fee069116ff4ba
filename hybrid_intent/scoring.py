"""
scoring.py - Merge rule, vector and LLM candidates into one Decision.

=============================================================================
THE ALGORITHM
=============================================================================

Input: 0-3 candidates for one query (absent / timed-out sources contribute
nothing). Output: exactly one Decision.

    0 candidates  -> Decision(None, 0.0)            "unresolved", not an error
    1 candidate   -> Decision mirrors it            confidence unchanged
    2+ candidates -> trust-weighted group vote:

        1. Sort candidates (confidence desc, trust desc, label) so that
           grouping never depends on which classifier answered first.
        2. Group by intent label.
        3. group score = sum(source_weight[source] * confidence)
        4. Highest group score wins.
        5. Scores within epsilon are a tie. The group holding the most
           trusted source wins (llm > vector > rule), whichever of its
           members is strongest. Then the group whose strongest member is
           most trusted. Then the smaller label.
        6. confidence = winner's score / sum of the weights of every source
           that answered (the best the candidate set could have scored).

Worked example, weights rule=0.6 vector=1.0 llm=1.2:

    rule   X 0.75  -> 0.45
    vector X 0.80  -> 0.80
    llm    Y 0.70  -> 0.84

    X = 1.25, Y = 0.84  -> X wins
    confidence = 1.25 / (0.6 + 1.0 + 1.2) = 0.4464

=============================================================================
DETERMINISM
=============================================================================

final_intent, confidence and contributing_candidates depend only on the
candidates, the weights and epsilon. decided_at comes from an injectable
clock so that tests can compare whole Decisions.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from hybrid_intent.config import ResolverConfig
from hybrid_intent.errors import ConfigurationError
from hybrid_intent.signals import Candidate, CandidateSource, Decision, utc_now

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class HybridScorer:
    """
    Trust-weighted aggregation of classifier candidates.

    Args:
        source_weights: weight per source; every source must be present
        epsilon: group scores closer than this are ties
        clock: returns decided_at for each Decision
    """

    def __init__(
        self,
        source_weights: Mapping[CandidateSource, float],
        epsilon: float = 1e-6,
        clock: Clock = utc_now,
    ) -> None:
        weights: Dict[CandidateSource, float] = {}
        for source in CandidateSource:
            w = source_weights.get(source, source_weights.get(source.value))  # type: ignore[call-overload]
            if w is None:
                raise ConfigurationError(f"missing source weight for '{source.value}'")
            if w < 0:
                raise ConfigurationError(f"source weight for '{source.value}' is negative")
            weights[source] = float(w)
        if epsilon < 0:
            raise ConfigurationError("epsilon must be >= 0")
        self.source_weights = weights
        self.epsilon = float(epsilon)
        self.clock = clock

    @classmethod
    def from_config(cls, config: ResolverConfig, clock: Clock = utc_now) -> "HybridScorer":
        return cls(config.source_weights, epsilon=config.tie_epsilon, clock=clock)

    @staticmethod
    def order(candidates: Iterable[Candidate]) -> Tuple[Candidate, ...]:
        """Descending confidence, then most trusted source, then label."""
        return tuple(sorted(candidates, key=Candidate.sort_key))

    def group_scores(self, candidates: Iterable[Candidate]) -> Dict[str, float]:
        """Weighted score per intent label, in first-seen order of the sorted candidates."""
        scores: Dict[str, float] = {}
        for c in self.order(candidates):
            scores[c.intent_label] = (
                scores.get(c.intent_label, 0.0) + self.source_weights[c.source] * c.confidence
            )
        return scores

    def max_possible(self, candidates: Iterable[Candidate]) -> float:
        """Score if every candidate had agreed at confidence 1.0."""
        return sum(self.source_weights[c.source] for c in candidates)

    def score(self, candidates: Iterable[Optional[Candidate]]) -> Decision:
        """
        Turn the candidates for one query into its Decision.

        None entries are absent signals and are skipped, so the resolver can
        pass its per-source results straight through.
        """
        ordered = self.order(c for c in candidates if c is not None)
        decided_at = self.clock()

        if not ordered:
            decision = Decision(
                final_intent=None,
                confidence=0.0,
                contributing_candidates=(),
                decided_at=decided_at,
            )
        elif len(ordered) == 1:
            only = ordered[0]
            decision = Decision(
                final_intent=only.intent_label,
                confidence=only.confidence,
                contributing_candidates=ordered,
                decided_at=decided_at,
            )
        else:
            winner, winner_score = self._pick_winner(ordered)
            denominator = self.max_possible(ordered)
            confidence = winner_score / denominator if denominator > 0 else 0.0
            decision = Decision(
                final_intent=winner,
                confidence=min(1.0, max(0.0, confidence)),
                contributing_candidates=ordered,
                decided_at=decided_at,
            )

        logger.debug(
            "decision intent=%s confidence=%.4f candidates=%s",
            decision.final_intent,
            decision.confidence,
            [(c.source.value, c.intent_label, round(c.confidence, 4)) for c in ordered],
        )
        return decision

    def _pick_winner(self, ordered: Tuple[Candidate, ...]) -> Tuple[str, float]:
        scores = self.group_scores(ordered)
        # ordered is sorted, so the first member seen per label is its strongest.
        strongest: Dict[str, Candidate] = {}
        most_trusted: Dict[str, int] = {}
        for c in ordered:
            strongest.setdefault(c.intent_label, c)
            most_trusted[c.intent_label] = max(
                most_trusted.get(c.intent_label, -1), c.source.trust_rank
            )

        best = max(scores.values())
        tied: List[str] = [label for label, s in scores.items() if best - s <= self.epsilon]
        if len(tied) == 1:
            return tied[0], scores[tied[0]]

        winner = min(
            tied,
            key=lambda label: (
                -most_trusted[label],
                -strongest[label].source.trust_rank,
                label,
            ),
        )
        logger.debug("tie between %s broken in favour of %s", sorted(tied), winner)
        return winner, scores[winner]
