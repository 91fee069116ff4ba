"""
hybrid_intent - Rule + vector + language-model intent resolution.

=============================================================================
PACKAGE OVERVIEW
=============================================================================

Given a user query, three independent classifiers each may propose an intent:

    rules.py         fixed phrases / regexes, fixed confidence
    intent_faiss.py  sentence-transformer embeddings searched in FAISS
    llm.py           an OpenAI-compatible chat endpoint

resolver.py runs them concurrently, each under its own timeout, and
scoring.py merges whatever came back into a single Decision by a
trust-weighted vote. Resolved turns are written back as episodic memory
(memory.py) without delaying the answer.

=============================================================================
MODULE STRUCTURE
=============================================================================

hybrid_intent/
├── signals.py        Query, Candidate, Decision, CandidateSource
├── errors.py         exception taxonomy
├── config.py         frozen configuration, load_config()
├── logging_utils.py  configure_logging() for entry points
├── rules.py          RuleMatcher
├── intent_faiss.py   Embedder, FaissVectorStore, VectorClassifier
├── llm.py            LanguageModelClassifier, ChatCompletionsClassifier
├── scoring.py        HybridScorer
├── memory.py         MemoryWriter
├── resolver.py       IntentResolver
└── bench.py          quality / latency / agreement metrics

=============================================================================
TYPICAL USAGE
=============================================================================

Building the intent index (offline):
------------------------------------
    from hybrid_intent.config import load_config
    from hybrid_intent.intent_faiss import Embedder, FaissVectorStore, read_jsonl_intents

    config = load_config("config.json")
    embedder = Embedder(config.vector.model_name)
    store = FaissVectorStore.build_intents(read_jsonl_intents("data/intents.jsonl"), embedder, config.vector)
    store.save("artifacts")

Resolving queries (online):
---------------------------
    from hybrid_intent.resolver import IntentResolver
    from hybrid_intent.signals import Query

    resolver = IntentResolver.from_config(config, embedder, FaissVectorStore.load("artifacts"))

    query = Query.create("book an appointment for tuesday", session_id="s-1")
    decision = await resolver.resolve(query, agent="clinic")
    if decision.resolved:
        resolver.remember(decision, query, "Sure, Tuesday at 10?")
    else:
        ...  # ask the user to clarify

=============================================================================
"""

from hybrid_intent import errors as errors
from hybrid_intent import signals as signals
from hybrid_intent import config as config
from hybrid_intent import rules as rules
from hybrid_intent import intent_faiss as intent_faiss
from hybrid_intent import llm as llm
from hybrid_intent import scoring as scoring
from hybrid_intent import memory as memory
from hybrid_intent import resolver as resolver
from hybrid_intent import bench as bench

__version__ = "0.1.0"

__all__ = [
    "errors",
    "signals",
    "config",
    "rules",
    "intent_faiss",
    "llm",
    "scoring",
    "memory",
    "resolver",
    "bench",
]
