"""Pytest fixtures for hybrid_intent tests.

The embedding model is replaced by KeywordModel: every known keyword owns one
axis, so similarities are exact and easy to reason about. FAISS itself is
real; every store in these tests is a genuine FaissVectorStore.
"""

import asyncio
import re
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import numpy as np
import pytest

from hybrid_intent.config import ResolverConfig, VectorConfig
from hybrid_intent.intent_faiss import Embedder, FaissVectorStore, IntentRecord
from hybrid_intent.llm import LanguageModelClassifier

FAKE_MODEL = "fake-keyword"
DIM = 8

KEYWORDS = {
    "book": 0,
    "appointment": 0,
    "schedule": 0,
    "visit": 0,
    "cancel": 1,
    "refill": 2,
    "prescription": 2,
    "pills": 2,
    "bill": 3,
    "billing": 3,
    "charged": 3,
    "invoice": 3,
    "card": 4,
    "payment": 4,
    "weather": 5,
    "refund": 6,
}
UNKNOWN_AXIS = DIM - 1

FIXED_TIME = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class KeywordModel:
    """Stands in for SentenceTransformer: a bag of keyword axes."""

    def __init__(self, dim: int = DIM):
        self.dim = dim
        self.encoded: List[str] = []

    def get_sentence_embedding_dimension(self) -> int:
        return self.dim

    def vector(self, text: str) -> np.ndarray:
        v = np.zeros(self.dim, dtype="float32")
        for word in re.findall(r"[a-z]+", text.lower()):
            if word in KEYWORDS:
                v[KEYWORDS[word]] += 1.0
        if not v.any():
            v[UNKNOWN_AXIS] = 1.0
        return v

    def encode(self, texts, batch_size=32, convert_to_numpy=True, show_progress_bar=False):
        self.encoded.extend(texts)
        return np.stack([self.vector(t) for t in texts])


class ScriptedLLM(LanguageModelClassifier):
    """Language-model classifier with a canned answer, delay or error."""

    def __init__(
        self,
        result: Tuple[str, float] = ("appointment_scheduling", 0.9),
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ):
        self.result = result
        self.delay = delay
        self.error = error
        self.calls: List[Tuple[str, object]] = []
        self.cancelled = False
        self.closed = False

    async def classify(self, query, context=None):
        self.calls.append((query, context))
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        return self.result

    async def aclose(self):
        self.closed = True


def make_records() -> List[IntentRecord]:
    return [
        IntentRecord(
            intent_id="appointment_scheduling",
            facets={
                "title": "Appointment",
                "example": "book an appointment",
                "description": "schedule a visit",
            },
            metadata={"agent": "clinic", "domain": "health", "tags": ["calendar"]},
        ),
        IntentRecord(
            intent_id="appointment_cancellation",
            facets={
                "title": "Cancel appointment",
                "example": "cancel my appointment",
                "description": "cancel a visit",
            },
            metadata={"agent": "clinic", "domain": "health", "tags": ["calendar"]},
        ),
        IntentRecord(
            intent_id="prescription_refill",
            facets={
                "title": "Prescription refill",
                "example": "refill my prescription",
                "description": "more pills",
            },
            metadata={"agent": "clinic", "domain": "health", "tags": ["pharmacy"]},
        ),
        IntentRecord(
            intent_id="billing_question",
            facets={
                "title": "Billing",
                "example": "why was I charged on my bill",
                "description": "question about an invoice",
            },
            metadata={"agent": "billing", "domain": "finance", "tags": ["invoice"]},
        ),
        IntentRecord(
            intent_id="payment_update",
            facets={
                "title": "Payment card",
                "example": "change my card",
                "description": "update the payment method",
            },
            metadata={"agent": "billing", "domain": "finance", "tags": ["card"]},
        ),
    ]


BASE_CONFIG = {
    "source_weights": {"rule": 0.6, "vector": 1.0, "llm": 1.2},
    "rules": {
        "confidence": 0.75,
        "patterns": [
            {"phrase": "book appointment", "intent": "appointment_scheduling"},
            {"phrase": "book an appointment", "intent": "appointment_scheduling"},
            {"regex": r"\brefill\b", "intent": "prescription_refill"},
        ],
    },
    "vector": {"model_name": FAKE_MODEL},
    "llm": {"enabled": False},
    "timeouts": {"vector_ms": 2000, "llm_ms": 200},
    "memory": {"enabled": True, "collection": "episodic"},
}


@pytest.fixture
def keyword_model():
    return KeywordModel()


@pytest.fixture
def embedder(keyword_model):
    return Embedder(FAKE_MODEL, model=keyword_model)


@pytest.fixture
def records():
    return make_records()


@pytest.fixture
def vector_config():
    return VectorConfig.from_dict({"model_name": FAKE_MODEL})


@pytest.fixture
def intent_store(records, embedder, vector_config):
    return FaissVectorStore.build_intents(records, embedder, vector_config)


@pytest.fixture
def base_config():
    """A fresh copy of the base config dict; tests tweak it before parsing."""
    return {
        k: (dict(v) if isinstance(v, dict) else v)
        for k, v in BASE_CONFIG.items()
    }


@pytest.fixture
def resolver_config(base_config):
    return ResolverConfig.from_dict(base_config)


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_TIME


@pytest.fixture
def scripted_llm():
    """Factory: scripted_llm(result=..., delay=..., error=...)."""
    return ScriptedLLM
