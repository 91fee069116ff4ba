"""
bench.py - Quality and latency metrics for the hybrid resolver.

=============================================================================
OVERVIEW
=============================================================================

Two questions:

1. QUALITY: is the resolver picking the right intent?
   - Precision / recall / F1 per intent
   - Coverage: fraction of queries that resolved at all
   - False-routing rate: of the queries labelled "none", how many did we
     resolve anyway. This is the safety metric: acting on the wrong intent
     is worse than asking the user to clarify.

2. LATENCY: where does the time go?
   - p50 / p95 / p99 per source (rule, vector, llm) and end to end.
   - The end-to-end number is bounded by the slowest source, which is
     capped by its timeout.

A third, hybrid-specific view: source_agreement() tells how often each
source's candidate matched the final decision. A source that rarely agrees
is either weak or badly weighted.

An unresolved Decision (final_intent None) counts as the prediction "none".
=============================================================================
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import numpy as np

from hybrid_intent.resolver import ResolutionTimings
from hybrid_intent.signals import CandidateSource, Decision

NONE_LABEL = "none"


@dataclass(frozen=True)
class Metrics:
    """
    per_intent: intent -> {tp, fp, fn, precision, recall, f1}
    overall: n, accuracy, coverage, abstain_rate, false_route_rate, ...
    """

    per_intent: Dict[str, Dict[str, float]]
    overall: Dict[str, float]


def predicted_label(decision: Decision) -> str:
    return decision.final_intent if decision.final_intent is not None else NONE_LABEL


def percentile_ms(values: List[float], p: float) -> float:
    """p-th percentile, 0.0 for no values."""
    if not values:
        return 0.0
    arr = np.asarray(values, dtype="float64")
    return float(np.percentile(arr, p))


# =============================================================================
# QUALITY METRICS
# =============================================================================


def compute_metrics(
    truth: List[str],
    pred: List[str],
    positive_intents: List[str],
) -> Metrics:
    """
    Classification metrics for an open-set problem where "none" means
    "should not resolve".

    Args:
        truth: ground-truth labels
        pred: predicted labels ("none" for unresolved)
        positive_intents: the real intents (excluding "none")

    Raises:
        ValueError: truth and pred lengths differ
    """
    if len(truth) != len(pred):
        raise ValueError("truth and pred length mismatch")

    per: Dict[str, Dict[str, float]] = {}
    for intent in sorted(set(positive_intents)):
        tp = sum(1 for t, p in zip(truth, pred) if p == intent and t == intent)
        fp = sum(1 for t, p in zip(truth, pred) if p == intent and t != intent)
        fn = sum(1 for t, p in zip(truth, pred) if p != intent and t == intent)

        precision = tp / (tp + fp) if (tp + fp) > 0 else 0.0
        recall = tp / (tp + fn) if (tp + fn) > 0 else 0.0
        f1 = (2 * precision * recall) / (precision + recall) if (precision + recall) > 0 else 0.0
        per[intent] = {
            "tp": float(tp),
            "fp": float(fp),
            "fn": float(fn),
            "precision": float(precision),
            "recall": float(recall),
            "f1": float(f1),
        }

    n = len(truth)
    correct = sum(1 for t, p in zip(truth, pred) if t == p)
    accuracy = correct / n if n > 0 else 0.0

    # Of all "none" queries, how many did we act on anyway?
    none_total = sum(1 for t in truth if t == NONE_LABEL)
    false_route = sum(1 for t, p in zip(truth, pred) if t == NONE_LABEL and p != NONE_LABEL)
    false_route_rate = false_route / none_total if none_total > 0 else 0.0

    coverage = sum(1 for p in pred if p != NONE_LABEL) / n if n > 0 else 0.0

    overall = {
        "n": float(n),
        "accuracy": float(accuracy),
        "coverage": float(coverage),
        "abstain_rate": float(1.0 - coverage),
        "false_route_rate": float(false_route_rate),
        "none_total": float(none_total),
        "false_route": float(false_route),
    }
    return Metrics(per_intent=per, overall=overall)


def source_agreement(decisions: Iterable[Decision]) -> Dict[str, Dict[str, float]]:
    """
    For each source: how many decisions it contributed to, and how often its
    candidate named the final intent.

    Returns:
        {"rule": {"contributed": n, "agreed": m, "agreement_rate": m / n}, ...}
    """
    stats: Dict[str, Dict[str, float]] = {
        s.value: {"contributed": 0.0, "agreed": 0.0} for s in CandidateSource
    }
    for d in decisions:
        for source in CandidateSource:
            c = d.candidate_for(source)
            if c is None:
                continue
            stats[source.value]["contributed"] += 1
            if c.intent_label == d.final_intent:
                stats[source.value]["agreed"] += 1
    for row in stats.values():
        row["agreement_rate"] = row["agreed"] / row["contributed"] if row["contributed"] else 0.0
    return stats


# =============================================================================
# LATENCY METRICS
# =============================================================================


def summarize_latency(timings: List[ResolutionTimings], sources: Optional[List[str]] = None) -> Dict[str, float]:
    """
    Latency percentiles per source and end to end.

    Args:
        timings: one ResolutionTimings per resolved query
        sources: which components to report; defaults to rule, vector, llm, total

    Returns:
        {"rule_p50_ms": ..., "rule_p95_ms": ..., ..., "total_p99_ms": ...}
    """
    sources = sources or ["rule", "vector", "llm", "total"]
    out: Dict[str, float] = {}
    for name in sources:
        values = [float(getattr(t, f"{name}_ms")) for t in timings]
        for p in (50, 95, 99):
            out[f"{name}_p{p}_ms"] = percentile_ms(values, p)
    return out
