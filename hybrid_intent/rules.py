"""
rules.py - Deterministic phrase / regex intent matcher.

The cheapest of the three signals. Rules are checked in configured order and
the first one that fires wins, always with the same fixed confidence (0.75 by
default). No match is not an error; it means the rules have no opinion.

Phrase rules match case-insensitively at word boundaries on the
whitespace-normalized query, so "Book  Appointment please" fires
"book appointment" but "rebook appointments" does not.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import List, Optional, Pattern, Sequence

from hybrid_intent.config import RuleConfig, RuleSpec
from hybrid_intent.errors import ConfigurationError
from hybrid_intent.signals import Candidate, CandidateSource


@dataclass(frozen=True)
class CompiledRule:
    spec: RuleSpec
    pattern: Pattern[str]

    @property
    def intent(self) -> str:
        return self.spec.intent


def compile_rule(spec: RuleSpec) -> CompiledRule:
    """
    Raises:
        ConfigurationError: malformed regular expression
    """
    if spec.phrase is not None:
        words = spec.phrase.split()
        source = r"(?<!\w)" + r"\s+".join(re.escape(w) for w in words) + r"(?!\w)"
    else:
        source = spec.regex or ""
    try:
        pattern = re.compile(source, re.IGNORECASE)
    except re.error as e:
        raise ConfigurationError(f"malformed pattern for intent '{spec.intent}': {e}") from e
    return CompiledRule(spec=spec, pattern=pattern)


class RuleMatcher:
    """Ordered rules, first match wins."""

    def __init__(self, rules: Sequence[RuleSpec], confidence: float = 0.75) -> None:
        if not 0.0 <= confidence <= 1.0:
            raise ConfigurationError(f"rule confidence must be in [0, 1], got {confidence}")
        self.confidence = float(confidence)
        self.rules: List[CompiledRule] = [compile_rule(r) for r in rules]

    @classmethod
    def from_config(cls, config: RuleConfig) -> "RuleMatcher":
        return cls(config.patterns, confidence=config.confidence)

    def explain(self, text: str) -> Optional[CompiledRule]:
        """The rule that fires for `text`, or None."""
        normalized = " ".join((text or "").split())
        if not normalized:
            return None
        for rule in self.rules:
            if rule.pattern.search(normalized):
                return rule
        return None

    def match(self, text: str) -> Optional[Candidate]:
        t0 = time.perf_counter_ns()
        rule = self.explain(text)
        if rule is None:
            return None
        return Candidate(
            source=CandidateSource.RULE,
            intent_label=rule.intent,
            confidence=self.confidence,
            latency_ms=int((time.perf_counter_ns() - t0) / 1e6),
        )
