"""
resolver.py - Fan a query out to every classifier, score, remember.

=============================================================================
THE REQUEST PATH
=============================================================================

    resolve(query)
      ├── rule matcher        (synchronous, no timeout)
      ├── vector classifier   (worker thread, vector timeout, default 500 ms)
      └── LLM classifier      (async HTTP, LLM timeout, default 1500 ms)
            │
            ▼  barrier: wait until every source answered, failed or timed out
      HybridScorer.score(candidates) -> Decision

Each source runs as its own asyncio task. A source that times out or fails
is logged and contributes nothing; the scorer only ever sees Candidates.

If resolve() itself is cancelled (client went away) every in-flight
classifier task is cancelled too. Memory writes already scheduled with
remember() are independent and keep going.

=============================================================================
SHARED STATE
=============================================================================

Config, rules and the intent catalogue are read-only while serving. The only
thing queries write is failure_counts, a per-source tally for whatever
circuit breaker sits above this layer. The catalogue changes only through
reload_intents().
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from hybrid_intent.config import ResolverConfig
from hybrid_intent.errors import ServiceFailure, ServiceTimeout
from hybrid_intent.intent_faiss import (
    Embedder,
    FaissVectorStore,
    IntentRecord,
    MetadataFilter,
    VectorClassifier,
)
from hybrid_intent.llm import ChatCompletionsClassifier, Context, LanguageModelClassifier
from hybrid_intent.memory import EpisodicEntry, MemoryWriter
from hybrid_intent.rules import RuleMatcher
from hybrid_intent.scoring import Clock, HybridScorer
from hybrid_intent.signals import Candidate, CandidateSource, Decision, Query, utc_now

logger = logging.getLogger(__name__)

# Per-source outcome labels reported in Resolution.outcomes
OUTCOME_CANDIDATE = "candidate"
OUTCOME_ABSENT = "absent"
OUTCOME_TIMEOUT = "timeout"
OUTCOME_FAILURE = "failure"
OUTCOME_DISABLED = "disabled"


@dataclass(frozen=True)
class ResolutionTimings:
    """Wall time per source and end to end, in milliseconds."""

    rule_ms: float = 0.0
    vector_ms: float = 0.0
    llm_ms: float = 0.0
    total_ms: float = 0.0


@dataclass(frozen=True)
class Resolution:
    """A Decision plus how each source behaved while producing it."""

    query: Query
    decision: Decision
    outcomes: Mapping[CandidateSource, str]
    timings: ResolutionTimings
    candidates: Mapping[CandidateSource, Optional[Candidate]] = field(default_factory=dict)


SourceCall = Callable[[], Awaitable[Optional[Candidate]]]


class IntentResolver:
    """
    Hybrid intent resolution for one process.

    Build it with from_config() at startup; that also runs check_ready() so a
    misconfigured resolver never serves.
    """

    def __init__(
        self,
        config: ResolverConfig,
        rule_matcher: RuleMatcher,
        vector_classifier: VectorClassifier,
        llm_classifier: Optional[LanguageModelClassifier] = None,
        memory_writer: Optional[MemoryWriter] = None,
        scorer: Optional[HybridScorer] = None,
    ) -> None:
        self.config = config
        self.rule_matcher = rule_matcher
        self.vector_classifier = vector_classifier
        self.llm_classifier = llm_classifier
        self.memory_writer = memory_writer
        self.scorer = scorer or HybridScorer.from_config(config)
        self.failure_counts: Counter = Counter()

    @classmethod
    def from_config(
        cls,
        config: ResolverConfig,
        embedder: Embedder,
        intent_store: FaissVectorStore,
        memory_store: Optional[FaissVectorStore] = None,
        llm_classifier: Optional[LanguageModelClassifier] = None,
        clock: Clock = utc_now,
    ) -> "IntentResolver":
        """
        Wire every component from configuration.

        The LLM classifier defaults to ChatCompletionsClassifier when
        config.llm.enabled. Episodic memory goes to `memory_store` (or the
        intent store when not given) when config.memory.enabled.

        Raises:
            ConfigurationError: see check_ready()
        """
        if llm_classifier is None and config.llm.enabled:
            llm_classifier = ChatCompletionsClassifier.from_config(config.llm)
        memory_writer = None
        if config.memory.enabled:
            memory_writer = MemoryWriter(
                memory_store or intent_store,
                embedder,
                collection=config.memory.collection,
            )
        resolver = cls(
            config=config,
            rule_matcher=RuleMatcher.from_config(config.rules),
            vector_classifier=VectorClassifier(intent_store, embedder, config.vector),
            llm_classifier=llm_classifier,
            memory_writer=memory_writer,
            scorer=HybridScorer.from_config(config, clock=clock),
        )
        resolver.check_ready()
        return resolver

    def check_ready(self, agents: Optional[Iterable[Optional[str]]] = None) -> None:
        """
        Fail fast on a configuration that would break every query.

        Checks the base collection plus one per agent with a configured
        threshold (per_agent routing).
        """
        self.vector_classifier.check_ready(self._agents() if agents is None else agents)

    # -------------------------------------------------------------------------
    # Request path
    # -------------------------------------------------------------------------

    async def resolve(
        self,
        query: Union[Query, str],
        agent: Optional[str] = None,
        context: Optional[Context] = None,
        filter: Optional[MetadataFilter] = None,
    ) -> Decision:
        resolution = await self.resolve_with_trace(query, agent=agent, context=context, filter=filter)
        return resolution.decision

    async def resolve_with_trace(
        self,
        query: Union[Query, str],
        agent: Optional[str] = None,
        context: Optional[Context] = None,
        filter: Optional[MetadataFilter] = None,
    ) -> Resolution:
        """
        Run all sources concurrently and score what comes back.

        Args:
            query: a Query, or raw text (stamped now, no session)
            agent: routes the vector search and picks its threshold
            context: passed to the LLM classifier only
            filter: extra payload filter for the vector search
        """
        if isinstance(query, str):
            query = Query.create(query)
        t0 = time.perf_counter_ns()

        calls: Dict[CandidateSource, Tuple[SourceCall, Optional[float]]] = {
            CandidateSource.RULE: (lambda: self._rule(query.text), None),
            CandidateSource.VECTOR: (
                lambda: self.vector_classifier.aclassify(query.text, agent, filter),
                self.config.timeouts.vector_s,
            ),
        }
        llm = self.llm_classifier
        if llm is not None:
            calls[CandidateSource.LLM] = (
                lambda: self._llm(llm, query.text, context),
                self.config.timeouts.llm_s,
            )

        tasks = {
            source: asyncio.ensure_future(self._run_source(source, call, timeout))
            for source, (call, timeout) in calls.items()
        }
        try:
            results = await asyncio.gather(*tasks.values())
        except asyncio.CancelledError:
            for task in tasks.values():
                task.cancel()
            raise

        outcomes: Dict[CandidateSource, str] = {s: OUTCOME_DISABLED for s in CandidateSource}
        elapsed: Dict[CandidateSource, float] = {}
        candidates: Dict[CandidateSource, Optional[Candidate]] = {}
        for source, (candidate, outcome, ms) in zip(tasks, results):
            outcomes[source] = outcome
            elapsed[source] = ms
            candidates[source] = candidate

        decision = self.scorer.score(candidates.values())
        timings = ResolutionTimings(
            rule_ms=elapsed.get(CandidateSource.RULE, 0.0),
            vector_ms=elapsed.get(CandidateSource.VECTOR, 0.0),
            llm_ms=elapsed.get(CandidateSource.LLM, 0.0),
            total_ms=(time.perf_counter_ns() - t0) / 1e6,
        )
        logger.debug(
            "resolved session=%s intent=%s confidence=%.4f outcomes=%s",
            query.session_id,
            decision.final_intent,
            decision.confidence,
            {s.value: o for s, o in outcomes.items()},
        )
        return Resolution(
            query=query,
            decision=decision,
            outcomes=outcomes,
            timings=timings,
            candidates=candidates,
        )

    async def _rule(self, text: str) -> Optional[Candidate]:
        return self.rule_matcher.match(text)

    async def _llm(
        self,
        llm: LanguageModelClassifier,
        text: str,
        context: Optional[Context],
    ) -> Optional[Candidate]:
        t0 = time.perf_counter_ns()
        label, confidence = await llm.classify(text, context)
        try:
            return Candidate(
                source=CandidateSource.LLM,
                intent_label=label,
                confidence=confidence,
                latency_ms=int((time.perf_counter_ns() - t0) / 1e6),
            )
        except ValueError as e:
            raise ServiceFailure(f"invalid language model classification: {e}") from e

    async def _run_source(
        self,
        source: CandidateSource,
        call: SourceCall,
        timeout: Optional[float],
    ) -> Tuple[Optional[Candidate], str, float]:
        """
        Run one source under its deadline; never raises except on cancellation.

        Returns:
            (candidate or None, outcome label, elapsed ms)
        """
        t0 = time.perf_counter_ns()

        def elapsed_ms() -> float:
            return (time.perf_counter_ns() - t0) / 1e6

        try:
            if timeout is None:
                candidate = await call()
            else:
                candidate = await asyncio.wait_for(call(), timeout=timeout)
        except (asyncio.TimeoutError, ServiceTimeout):
            logger.warning("%s classifier timed out after %.0f ms", source.value, elapsed_ms())
            self.failure_counts[source] += 1
            return None, OUTCOME_TIMEOUT, elapsed_ms()
        except ServiceFailure as e:
            logger.error("%s classifier failed: %s", source.value, e, exc_info=True)
            self.failure_counts[source] += 1
            return None, OUTCOME_FAILURE, elapsed_ms()
        except Exception:
            logger.exception("%s classifier raised unexpectedly", source.value)
            self.failure_counts[source] += 1
            return None, OUTCOME_FAILURE, elapsed_ms()

        outcome = OUTCOME_CANDIDATE if candidate is not None else OUTCOME_ABSENT
        return candidate, outcome, elapsed_ms()

    # -------------------------------------------------------------------------
    # Memory
    # -------------------------------------------------------------------------

    def remember(
        self,
        decision: Decision,
        query: Query,
        response_text: str,
    ) -> Optional["asyncio.Task[List[EpisodicEntry]]"]:
        """Fire-and-forget episodic write; None when memory is disabled."""
        if self.memory_writer is None:
            return None
        return self.memory_writer.remember(decision, query, response_text)

    async def build_context(
        self,
        query: Query,
        previous: Optional[Decision] = None,
        top_k: int = 3,
    ) -> Dict[str, Any]:
        """
        Context for the LLM classifier: the previous decision and the most
        similar turns from this session.
        """
        context: Dict[str, Any] = {}
        if previous is not None:
            context["previous_decision"] = {
                "intent": previous.final_intent,
                "confidence": previous.confidence,
            }
        if self.memory_writer is not None and query.session_id:
            turns = await self.memory_writer.arecall(query.text, session_id=query.session_id, top_k=top_k)
            if turns:
                context["recent_turns"] = [{"role": t.role, "text": t.text} for t in turns]
        return context

    # -------------------------------------------------------------------------
    # Catalogue and lifecycle
    # -------------------------------------------------------------------------

    def _agents(self) -> List[Optional[str]]:
        agents: List[Optional[str]] = [None]
        if self.config.vector.routing == "per_agent":
            agents += sorted(self.config.vector.agent_thresholds)
        return agents

    def reload_intents(self, records: Iterable[IntentRecord]) -> None:
        """
        Rebuild and swap the intent catalogue.

        The new catalogue is checked before it replaces the old one; on a
        ConfigurationError the old catalogue stays in service.
        """
        self.vector_classifier.reload(records, agents=self._agents())

    async def areload_intents(self, records: Iterable[IntentRecord]) -> None:
        await asyncio.to_thread(self.reload_intents, list(records))

    async def aclose(self) -> None:
        """Wait for pending memory writes, then close the vector executor and the LLM client."""
        if self.memory_writer is not None:
            await self.memory_writer.drain()
        self.vector_classifier.close()
        if self.llm_classifier is not None:
            await self.llm_classifier.aclose()
