"""Tests for concurrent fan-out, timeouts, failures and lifecycle of the resolver."""

import asyncio
import logging
import threading
from unittest.mock import AsyncMock

import pytest

from hybrid_intent.config import ResolverConfig
from hybrid_intent.errors import ConfigurationError, RateLimited, ServiceUnavailable
from hybrid_intent.intent_faiss import FaissVectorStore, IntentRecord
from hybrid_intent.resolver import (
    OUTCOME_ABSENT,
    OUTCOME_CANDIDATE,
    OUTCOME_DISABLED,
    OUTCOME_FAILURE,
    OUTCOME_TIMEOUT,
    IntentResolver,
)
from hybrid_intent.signals import CandidateSource, Query


@pytest.fixture
def make_resolver(resolver_config, embedder, intent_store, fixed_clock):
    def make(llm=None, config=None):
        return IntentResolver.from_config(
            config or resolver_config,
            embedder,
            intent_store,
            memory_store=FaissVectorStore(),
            llm_classifier=llm,
            clock=fixed_clock,
        )

    return make


@pytest.mark.asyncio
async def test_all_sources_agree(make_resolver, scripted_llm, fixed_clock):
    llm = scripted_llm(("appointment_scheduling", 0.9))
    resolver = make_resolver(llm)
    res = await resolver.resolve_with_trace("book an appointment", agent="clinic")

    assert res.outcomes == {
        CandidateSource.RULE: OUTCOME_CANDIDATE,
        CandidateSource.VECTOR: OUTCOME_CANDIDATE,
        CandidateSource.LLM: OUTCOME_CANDIDATE,
    }
    d = res.decision
    assert d.final_intent == "appointment_scheduling"
    assert d.confidence == pytest.approx((0.6 * 0.75 + 1.0 * 1.0 + 1.2 * 0.9) / 2.8, rel=1e-5)
    assert d.decided_at == fixed_clock()
    assert len(d.contributing_candidates) == 3
    assert llm.calls == [("book an appointment", None)]
    assert res.timings.total_ms >= 0


@pytest.mark.asyncio
async def test_llm_outvotes_weaker_sources(make_resolver, scripted_llm):
    # rule: prescription_refill (0.6 * 0.75 = 0.45), vector below its floor,
    # llm: billing_question (1.2 * 0.8 = 0.96)
    resolver = make_resolver(scripted_llm(("billing_question", 0.8)))
    res = await resolver.resolve_with_trace("refill the weather report, weather alerts too")
    assert res.outcomes[CandidateSource.VECTOR] == OUTCOME_ABSENT
    decision = res.decision
    assert decision.final_intent == "billing_question"


@pytest.mark.asyncio
async def test_llm_disabled(make_resolver):
    resolver = make_resolver()
    res = await resolver.resolve_with_trace("refill my prescription")
    assert res.outcomes[CandidateSource.LLM] == OUTCOME_DISABLED
    assert res.decision.final_intent == "prescription_refill"
    assert res.decision.candidate_for(CandidateSource.LLM) is None


@pytest.mark.asyncio
async def test_llm_disabled_in_config_builds_no_client(resolver_config, embedder, intent_store):
    resolver = IntentResolver.from_config(resolver_config, embedder, intent_store)
    assert resolver.llm_classifier is None


@pytest.mark.asyncio
async def test_nothing_matches_is_unresolved(make_resolver):
    res = await make_resolver().resolve_with_trace("what is the weather")
    assert res.decision.final_intent is None
    assert res.decision.confidence == 0.0
    assert res.outcomes[CandidateSource.RULE] == OUTCOME_ABSENT
    assert res.outcomes[CandidateSource.VECTOR] == OUTCOME_ABSENT


@pytest.mark.asyncio
async def test_slow_llm_times_out_as_absent(make_resolver, scripted_llm, caplog):
    llm = scripted_llm(("billing_question", 1.0), delay=5.0)
    resolver = make_resolver(llm)

    with caplog.at_level(logging.WARNING, logger="hybrid_intent.resolver"):
        res = await resolver.resolve_with_trace("book an appointment")

    assert res.outcomes[CandidateSource.LLM] == OUTCOME_TIMEOUT
    assert res.decision.final_intent == "appointment_scheduling"
    assert res.decision.confidence == pytest.approx((0.45 + 1.0) / 1.6, rel=1e-5)
    assert res.timings.llm_ms < 2000
    assert resolver.failure_counts[CandidateSource.LLM] == 1
    assert "llm classifier timed out" in caplog.text
    assert llm.cancelled


@pytest.mark.asyncio
async def test_llm_failure_is_counted_and_logged(make_resolver, scripted_llm, caplog):
    resolver = make_resolver(scripted_llm(error=RateLimited("429")))

    with caplog.at_level(logging.ERROR, logger="hybrid_intent.resolver"):
        for _ in range(2):
            res = await resolver.resolve_with_trace("book an appointment")

    assert res.outcomes[CandidateSource.LLM] == OUTCOME_FAILURE
    assert res.decision.final_intent == "appointment_scheduling"
    assert resolver.failure_counts[CandidateSource.LLM] == 2
    assert "llm classifier failed" in caplog.text


@pytest.mark.asyncio
async def test_llm_out_of_range_confidence_is_failure(make_resolver, scripted_llm):
    resolver = make_resolver(scripted_llm(("billing_question", 1.7)))
    res = await resolver.resolve_with_trace("book an appointment")
    assert res.outcomes[CandidateSource.LLM] == OUTCOME_FAILURE


@pytest.mark.asyncio
async def test_vector_failure_leaves_other_sources(make_resolver, scripted_llm):
    resolver = make_resolver(scripted_llm(("appointment_scheduling", 0.7)))
    resolver.vector_classifier.aclassify = AsyncMock(side_effect=ServiceUnavailable("index down"))

    res = await resolver.resolve_with_trace("book an appointment")
    assert res.outcomes[CandidateSource.VECTOR] == OUTCOME_FAILURE
    assert res.outcomes[CandidateSource.RULE] == OUTCOME_CANDIDATE
    assert res.decision.final_intent == "appointment_scheduling"
    assert resolver.failure_counts[CandidateSource.VECTOR] == 1


@pytest.mark.asyncio
async def test_unexpected_exception_does_not_escape(make_resolver):
    resolver = make_resolver()
    resolver.vector_classifier.aclassify = AsyncMock(side_effect=KeyError("bug"))
    res = await resolver.resolve_with_trace("book an appointment")
    assert res.outcomes[CandidateSource.VECTOR] == OUTCOME_FAILURE
    assert res.decision.final_intent == "appointment_scheduling"


@pytest.mark.asyncio
async def test_sources_run_concurrently(embedder, intent_store, scripted_llm, base_config):
    base_config["timeouts"] = {"vector_ms": 2000, "llm_ms": 2000}
    config = ResolverConfig.from_dict(base_config)
    resolver = IntentResolver.from_config(
        config, embedder, intent_store, llm_classifier=scripted_llm(delay=0.3)
    )

    async def slow_vector(*args, **kwargs):
        await asyncio.sleep(0.3)
        return None

    resolver.vector_classifier.aclassify = slow_vector
    res = await resolver.resolve_with_trace("book an appointment")
    assert res.timings.total_ms < 550


@pytest.mark.asyncio
async def test_cancelling_resolve_cancels_sources(make_resolver, scripted_llm, base_config):
    base_config["timeouts"] = {"vector_ms": 2000, "llm_ms": 10000}
    llm = scripted_llm(delay=10.0)
    resolver = make_resolver(llm, config=ResolverConfig.from_dict(base_config))

    task = asyncio.ensure_future(resolver.resolve("book an appointment"))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.sleep(0)
    assert llm.cancelled


@pytest.mark.asyncio
async def test_concurrent_queries_are_independent(make_resolver, scripted_llm):
    resolver = make_resolver(scripted_llm(("prescription_refill", 0.2)))
    texts = ["book an appointment", "refill my prescription", "change my payment card", "tell me a joke"]
    decisions = await asyncio.gather(*(resolver.resolve(t) for t in texts))
    assert [d.final_intent for d in decisions] == [
        "appointment_scheduling",
        "prescription_refill",
        "payment_update",
        "prescription_refill",
    ]


# =============================================================================
# Startup checks and reload
# =============================================================================


def test_from_config_rejects_unknown_collection(resolver_config, embedder):
    with pytest.raises(ConfigurationError, match="unknown collection"):
        IntentResolver.from_config(resolver_config, embedder, FaissVectorStore())


def test_from_config_rejects_model_mismatch(resolver_config, embedder, intent_store):
    intent_store.model_name = "another-model"
    with pytest.raises(ConfigurationError, match="another-model"):
        IntentResolver.from_config(resolver_config, embedder, intent_store)


def test_per_agent_requires_every_agent_collection(base_config, embedder, records):
    base_config["vector"] = {
        "model_name": "fake-keyword",
        "routing": "per_agent",
        "agent_thresholds": {"clinic": 0.8, "pharmacy": 0.8},
    }
    config = ResolverConfig.from_dict(base_config)
    store = FaissVectorStore.build_intents(records, embedder, config.vector)
    with pytest.raises(ConfigurationError, match="intents_pharmacy"):
        IntentResolver.from_config(config, embedder, store)


@pytest.mark.asyncio
async def test_reload_intents(make_resolver, records):
    resolver = make_resolver()
    assert (await resolver.resolve("I want a refund")).final_intent is None

    refund = IntentRecord(
        "refund_request",
        facets={"title": "Refund", "example": "refund my order", "description": "refund"},
    )
    await resolver.areload_intents(records + [refund])
    assert (await resolver.resolve("I want a refund")).final_intent == "refund_request"


def test_bad_reload_keeps_serving(make_resolver, records):
    resolver = make_resolver()
    store = resolver.vector_classifier.store
    with pytest.raises(ConfigurationError):
        resolver.reload_intents(records + records[:1])
    assert resolver.vector_classifier.store is store


# =============================================================================
# Memory and context
# =============================================================================


@pytest.mark.asyncio
async def test_remember_and_build_context(make_resolver):
    resolver = make_resolver()
    query = Query.create("book an appointment", session_id="s1")
    decision = await resolver.resolve(query)

    task = resolver.remember(decision, query, "Tuesday at 10 works")
    assert task is not None
    await resolver.aclose()
    assert len(task.result()) == 2

    follow_up = Query.create("actually make that appointment wednesday", session_id="s1")
    context = await resolver.build_context(follow_up, previous=decision)
    assert context["previous_decision"] == {
        "intent": "appointment_scheduling",
        "confidence": decision.confidence,
    }
    assert context["recent_turns"][0] == {"role": "user", "text": "book an appointment"}


@pytest.mark.asyncio
async def test_remember_disabled(base_config, embedder, intent_store):
    base_config["memory"] = {"enabled": False}
    resolver = IntentResolver.from_config(ResolverConfig.from_dict(base_config), embedder, intent_store)
    decision = await resolver.resolve("book an appointment")
    assert resolver.remember(decision, Query.create("book an appointment"), "ok") is None
    assert await resolver.build_context(Query.create("x", session_id="s1")) == {}


@pytest.mark.asyncio
async def test_context_is_passed_to_llm(make_resolver, scripted_llm):
    llm = scripted_llm()
    resolver = make_resolver(llm)
    await resolver.resolve("book an appointment", context={"previous_decision": {"intent": "x"}})
    assert llm.calls[0][1] == {"previous_decision": {"intent": "x"}}


@pytest.mark.asyncio
async def test_aclose_closes_llm(make_resolver, scripted_llm):
    llm = scripted_llm()
    resolver = make_resolver(llm)
    await resolver.aclose()
    assert llm.closed


@pytest.mark.asyncio
async def test_timed_out_vector_search_does_not_hold_memory_writes(base_config, embedder, intent_store):
    base_config["timeouts"] = {"vector_ms": 50, "llm_ms": 200}
    resolver = IntentResolver.from_config(
        ResolverConfig.from_dict(base_config),
        embedder,
        intent_store,
        memory_store=FaissVectorStore(),
    )
    release = threading.Event()

    def stuck_search(query, agent=None, filter=None):
        release.wait(5.0)
        return None

    resolver.vector_classifier.classify = stuck_search
    try:
        query = Query.create("book an appointment", session_id="s1")
        res = await resolver.resolve_with_trace(query)
        assert res.outcomes[CandidateSource.VECTOR] == OUTCOME_TIMEOUT
        assert res.decision.final_intent == "appointment_scheduling"

        task = resolver.remember(res.decision, query, "booked")
        assert len(await asyncio.wait_for(task, timeout=2.0)) == 2
    finally:
        release.set()
        await resolver.aclose()
