"""
build_index.py - Offline step: embed the intent catalogue into FAISS artifacts.

=============================================================================
WHAT THIS SCRIPT DOES
=============================================================================

    1. Read intent records from a JSONL file (intent + facet texts + metadata)
    2. Load the SentenceTransformer model named in the config
    3. Embed every facet text in one batch
    4. Build one FAISS index per facet, per collection (see vector.routing)
    5. Save indexes and metadata to the artifacts directory

Output, for the default single-collection routing:

    artifacts/
    ├── intents.title.faiss
    ├── intents.example.faiss
    ├── intents.description.faiss
    └── intents_meta.json          # schema, point ids, payloads, model name

With "per_agent" routing there is one such group per agent
("intents_clinic.*", "intents_billing.*", ...).

The running resolver can also reload a catalogue in place
(IntentResolver.reload_intents); this script is for shipping prebuilt
artifacts.

IMPORTANT: resolve.py and bench.py must use the same embedding model. The
model name is recorded in the metadata and checked at startup.
"""

from __future__ import annotations

import argparse
from pathlib import Path

from hybrid_intent.config import load_config
from hybrid_intent.intent_faiss import Embedder, FaissVectorStore, read_jsonl_intents
from hybrid_intent.logging_utils import configure_logging


def main() -> None:
    p = argparse.ArgumentParser(
        description="Build FAISS intent artifacts from an intent catalogue.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument(
        "--intents",
        default="data/intents.jsonl",
        help="Intent catalogue (JSONL with 'intent', 'facets', optional 'metadata')",
    )
    p.add_argument("--config", default=None, help="Resolver config JSON (default: $HYBRID_INTENT_CONFIG)")
    p.add_argument("--artifacts-dir", default="artifacts", help="Directory to write artifacts to")
    p.add_argument(
        "--model",
        default=None,
        help="Override vector.model_name from the config. Must match at query time!",
    )
    p.add_argument("--batch-size", type=int, default=64, help="Encoding batch size")
    p.add_argument("--log-level", default=None, help="Logging level (default: $HYBRID_INTENT_LOG_LEVEL or INFO)")
    args = p.parse_args()

    configure_logging(args.log_level)
    config = load_config(args.config)
    model_name = args.model or config.vector.model_name

    records = read_jsonl_intents(args.intents)
    print(f"Loaded {len(records)} intent records from {args.intents}")

    print(f"Loading embedding model: {model_name}")
    embedder = Embedder(model_name)

    store = FaissVectorStore.build_intents(
        records,
        embedder=embedder,
        config=config.vector,
        batch_size=int(args.batch_size),
    )

    artifacts_dir = Path(args.artifacts_dir)
    store.save(str(artifacts_dir))

    print("")
    print("=" * 60)
    print("BUILD COMPLETE")
    print("=" * 60)
    print(f"Model:        {model_name}")
    print(f"Routing:      {config.vector.routing}")
    print(f"Dimension:    {embedder.dimension}")
    print(f"Artifacts:    {artifacts_dir}/")
    for name in store.collections():
        facets = ", ".join(sorted(store.schema(name)))
        print(f"  {name:<24} {store.count(name):>4} record(s)  facets: {facets}")
    print("")
    print("Next steps:")
    print("  1. Try a query:    python scripts/resolve.py 'book an appointment for tuesday'")
    print("  2. Run benchmark:  python scripts/bench.py")
    print("")


if __name__ == "__main__":
    main()
