"""
bench.py - Run the hybrid resolver over a labeled test set and report.

=============================================================================
WHAT THIS SCRIPT MEASURES
=============================================================================

Quality (see hybrid_intent/bench.py for definitions):
    accuracy, coverage, abstain rate, per-intent precision / recall / F1, and
    the false-routing rate on queries labelled "none".

Agreement:
    per source, how often its candidate named the final intent.

Latency:
    p50 / p95 / p99 for each source and end to end. Sources run concurrently,
    so total is close to the slowest source, not the sum.

Test data is JSONL, one {"text": ..., "intent": ...} per line. Include
negative examples labelled "none"; without them the false-routing rate is
meaningless.

Queries are resolved one at a time so the latency numbers are not skewed by
queueing. Use --concurrency to measure behaviour under load instead.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import List

from hybrid_intent.bench import (
    compute_metrics,
    predicted_label,
    source_agreement,
    summarize_latency,
)
from hybrid_intent.config import load_config
from hybrid_intent.errors import ConfigurationError, NotFound
from hybrid_intent.intent_faiss import (
    Embedder,
    Example,
    FaissVectorStore,
    read_jsonl_examples,
    read_jsonl_intents,
)
from hybrid_intent.logging_utils import configure_logging
from hybrid_intent.resolver import IntentResolver, Resolution


async def run_all(
    resolver: IntentResolver,
    tests: List[Example],
    agent: str,
    concurrency: int,
) -> List[Resolution]:
    sem = asyncio.Semaphore(max(1, concurrency))

    async def one(text: str) -> Resolution:
        async with sem:
            return await resolver.resolve_with_trace(text, agent=agent or None)

    try:
        # Warmup: first encoder calls are slower (thread pool, caches).
        for ex in tests[:10]:
            await resolver.resolve(ex.text, agent=agent or None)
        return list(await asyncio.gather(*(one(ex.text) for ex in tests)))
    finally:
        await resolver.aclose()


def main() -> None:
    p = argparse.ArgumentParser(
        description="Benchmark hybrid intent resolution on a labeled test set.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--test", default="data/test.jsonl", help="Labeled test queries (JSONL)")
    p.add_argument(
        "--intents",
        default="data/intents.jsonl",
        help="Intent catalogue; defines the positive intents for metrics",
    )
    p.add_argument("--config", default=None, help="Resolver config JSON (default: $HYBRID_INTENT_CONFIG)")
    p.add_argument("--artifacts-dir", default="artifacts", help="Directory written by build_index.py")
    p.add_argument("--agent", default="", help="Agent to route every query to")
    p.add_argument("--concurrency", type=int, default=1, help="Queries in flight at once")
    p.add_argument("--json-out", default="", help="If provided, write the full report to this JSON file")
    p.add_argument("--log-level", default="WARNING", help="Logging level")
    args = p.parse_args()

    configure_logging(args.log_level)
    config = load_config(args.config)

    try:
        store = FaissVectorStore.load(args.artifacts_dir)
    except NotFound as e:
        print(f"ERROR: {e}")
        print("Run: python scripts/build_index.py")
        sys.exit(1)

    embedder = Embedder(store.model_name or config.vector.model_name)
    try:
        resolver = IntentResolver.from_config(config, embedder, store, memory_store=FaissVectorStore())
    except ConfigurationError as e:
        print(f"CONFIGURATION ERROR: {e}")
        sys.exit(2)

    tests = read_jsonl_examples(args.test)
    resolutions = asyncio.run(run_all(resolver, tests, args.agent, int(args.concurrency)))

    truth = [ex.intent for ex in tests]
    pred = [predicted_label(r.decision) for r in resolutions]
    positive_intents = sorted({r.intent_id for r in read_jsonl_intents(args.intents)})
    metrics = compute_metrics(truth=truth, pred=pred, positive_intents=positive_intents)
    agreement = source_agreement(r.decision for r in resolutions)
    latency = summarize_latency([r.timings for r in resolutions])

    print("")
    print("=" * 60)
    print("BENCHMARK CONFIGURATION")
    print("=" * 60)
    print(f"Model:           {embedder.model_name}")
    print(f"Routing:         {config.vector.routing}")
    print(f"Source weights:  {', '.join(f'{s.value}={w}' for s, w in config.source_weights.items())}")
    print(f"Vector floor:    {config.vector.threshold_for(args.agent or None)}")
    print(f"LLM enabled:     {config.llm.enabled}")
    print(f"Test examples:   {len(tests)}")
    print(f"Concurrency:     {args.concurrency}")

    print("")
    print("=" * 60)
    print("OVERALL METRICS")
    print("=" * 60)
    print(f"n:                {metrics.overall['n']:.0f}")
    print(f"accuracy:         {metrics.overall['accuracy']:.4f}")
    print(f"coverage:         {metrics.overall['coverage']:.4f}  (fraction resolved)")
    print(f"abstain_rate:     {metrics.overall['abstain_rate']:.4f}  (fraction unresolved)")
    print("")
    print(">>> SAFETY METRIC (should be LOW):")
    print(
        f"false_route_rate: {metrics.overall['false_route_rate']:.4f}  "
        f"({int(metrics.overall['false_route'])}/{int(metrics.overall['none_total'])} "
        "'none' queries resolved anyway)"
    )

    print("")
    print("=" * 60)
    print("PER-INTENT METRICS")
    print("=" * 60)
    for intent, d in metrics.per_intent.items():
        print(f"\n  {intent}")
        print(f"    precision: {d['precision']:.4f}")
        print(f"    recall:    {d['recall']:.4f}")
        print(f"    f1:        {d['f1']:.4f}")
        print(f"    tp/fp/fn:  {int(d['tp'])}/{int(d['fp'])}/{int(d['fn'])}")

    print("")
    print("=" * 60)
    print("SOURCE AGREEMENT")
    print("=" * 60)
    for source, row in agreement.items():
        print(
            f"  {source:<7} contributed {int(row['contributed']):>4}  "
            f"agreed {int(row['agreed']):>4}  ({row['agreement_rate']:.2%})"
        )
    failures = {s.value: n for s, n in resolver.failure_counts.items()}
    print(f"  failures: {failures or 'none'}")

    print("")
    print("=" * 60)
    print("LATENCY METRICS (milliseconds)")
    print("=" * 60)
    for name in ("rule", "vector", "llm", "total"):
        print(
            f"  {name:<7} p50 {latency[f'{name}_p50_ms']:8.3f}   "
            f"p95 {latency[f'{name}_p95_ms']:8.3f}   "
            f"p99 {latency[f'{name}_p99_ms']:8.3f}"
        )

    if args.json_out:
        out = {
            "config": config.to_dict(),
            "overall": metrics.overall,
            "per_intent": metrics.per_intent,
            "agreement": agreement,
            "failures": failures,
            "latency": latency,
        }
        with open(args.json_out, "w", encoding="utf-8") as f:
            json.dump(out, f, indent=2)
        print("")
        print(f"Wrote JSON report: {args.json_out}")

    print("")


if __name__ == "__main__":
    main()
