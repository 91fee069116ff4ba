"""
resolve.py - Resolve one query and show how the decision was made.

Usage:

    python scripts/resolve.py "book an appointment for tuesday"
    python scripts/resolve.py --agent clinic "move my booking"

Prints, in order:

    - the Decision (intent, confidence, or "unresolved")
    - what each source did: candidate / absent / timeout / failure / disabled
    - the weighted group score per intent
    - the vector classifier's best matches with per-facet similarities
    - which rule fired, if any

When nothing resolves the host application would ask the user to clarify;
this script prints that fallback instead.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Optional

from hybrid_intent.config import load_config
from hybrid_intent.errors import ConfigurationError, NotFound
from hybrid_intent.intent_faiss import Embedder, FaissVectorStore
from hybrid_intent.logging_utils import configure_logging
from hybrid_intent.resolver import IntentResolver
from hybrid_intent.signals import Query

CLARIFY_MESSAGE = "Sorry, I'm not sure what you need. Could you rephrase that?"


async def run(resolver: IntentResolver, text: str, agent: Optional[str], session: Optional[str], top: int) -> None:
    query = Query.create(text, session_id=session)
    try:
        res = await resolver.resolve_with_trace(query, agent=agent)
    finally:
        await resolver.aclose()
    decision = res.decision

    print("")
    print("=" * 60)
    print("DECISION")
    print("=" * 60)
    print(f"query:         {text}")
    if agent:
        print(f"agent:         {agent}")
    if decision.resolved:
        print(f"final_intent:  {decision.final_intent}")
        print(f"confidence:    {decision.confidence:.6f}")
    else:
        print("final_intent:  (unresolved)")
        print(f">>> {CLARIFY_MESSAGE}")
    print(f"decided_at:    {decision.decided_at.isoformat()}")

    print("")
    print("-" * 60)
    print("Sources:")
    print("-" * 60)
    for source, outcome in res.outcomes.items():
        c = res.candidates.get(source)
        ms = getattr(res.timings, f"{source.value}_ms")
        detail = f"{c.intent_label} @ {c.confidence:.4f}" if c is not None else ""
        print(f"  {source.value:<7} {outcome:<10} {ms:8.2f} ms  {detail}")
    print(f"  {'total':<7} {'':<10} {res.timings.total_ms:8.2f} ms")

    if len(decision.contributing_candidates) > 1:
        print("")
        print("-" * 60)
        print("Weighted group scores:")
        print("-" * 60)
        scores = resolver.scorer.group_scores(decision.contributing_candidates)
        denom = resolver.scorer.max_possible(decision.contributing_candidates)
        for intent, score in sorted(scores.items(), key=lambda kv: -kv[1]):
            marker = "<--" if intent == decision.final_intent else "   "
            print(f"  {marker} {intent:<28} {score:.4f}  / {denom:.4f}")

    rule = resolver.rule_matcher.explain(text)
    print("")
    print("-" * 60)
    print("Rule:")
    print("-" * 60)
    if rule is None:
        print("  no rule fired")
    else:
        print(f"  {rule.intent}  <- {rule.spec.phrase or rule.spec.regex!r}")

    vc, t = resolver.vector_classifier.classify_with_timings(text, agent=agent)
    print("")
    print("=" * 60)
    print(f"VECTOR MATCHES ({vc.collection}, threshold {vc.threshold:.2f})")
    print("=" * 60)
    if not vc.matches:
        print("  no matches")
    for m in vc.matches[:top]:
        marker = "<--" if m.score >= vc.threshold and m.intent == vc.best_intent else "   "
        facets = "  ".join(f"{f}={s:.3f}" for f, s in sorted(m.facet_scores.items()))
        print(f"  {marker} {m.score:.4f}  {m.intent:<28} {facets}")
    print("")
    print(f"  encode: {t.encode_ms:.2f} ms   search: {t.search_ms:.2f} ms")
    print("")


def main() -> None:
    p = argparse.ArgumentParser(
        description="Resolve the intent of a single query.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("query", help="User query text")
    p.add_argument("--agent", default=None, help="Agent to route the vector search to")
    p.add_argument("--session", default=None, help="Session id (scopes episodic memory)")
    p.add_argument("--config", default=None, help="Resolver config JSON (default: $HYBRID_INTENT_CONFIG)")
    p.add_argument("--artifacts-dir", default="artifacts", help="Directory written by build_index.py")
    p.add_argument("--top", type=int, default=5, help="How many vector matches to show")
    p.add_argument("--log-level", default=None, help="Logging level (default: $HYBRID_INTENT_LOG_LEVEL or INFO)")
    args = p.parse_args()

    configure_logging(args.log_level)
    config = load_config(args.config)

    try:
        store = FaissVectorStore.load(args.artifacts_dir)
    except NotFound as e:
        print(f"ERROR: {e}")
        print("")
        print("Did you forget to build the index? Run:")
        print("  python scripts/build_index.py")
        sys.exit(1)

    embedder = Embedder(store.model_name or config.vector.model_name)
    try:
        resolver = IntentResolver.from_config(config, embedder, store, memory_store=FaissVectorStore())
    except ConfigurationError as e:
        print("=" * 60)
        print("CONFIGURATION ERROR")
        print("=" * 60)
        print(str(e))
        sys.exit(2)

    asyncio.run(run(resolver, args.query, args.agent, args.session, int(args.top)))


if __name__ == "__main__":
    main()
