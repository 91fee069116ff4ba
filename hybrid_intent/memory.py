"""
memory.py - Episodic memory: write resolved turns back to the vector store.

Each resolved interaction becomes two append-only entries in the episodic
collection, one for the user's query and one for the response, each with its
own embedding. Later queries can recall() similar past turns and hand them to
the language-model classifier as context.

Writing is fire-and-forget. remember() schedules the write and returns at
once; a failed write is logged and dropped. Answering the current query never
waits on memory.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

import numpy as np

from hybrid_intent.intent_faiss import Embedder, FaissVectorStore
from hybrid_intent.signals import Decision, Query

logger = logging.getLogger(__name__)

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


@dataclass(frozen=True)
class EpisodicEntry:
    """
    One past conversation turn.

    embedding is None for entries read back by recall(); the vector stays in
    the index.
    """

    entry_id: str
    role: str
    text: str
    embedding: Optional[np.ndarray]
    timestamp: datetime
    session_id: Optional[str] = None
    intent: Optional[str] = None
    confidence: float = 0.0
    score: float = 0.0  # similarity to the recall query; 0 for fresh entries

    def payload(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
            "session_id": self.session_id,
            "intent": self.intent,
            "confidence": self.confidence,
        }


class MemoryWriter:
    """
    Append-only writer (and reader) for the episodic collection.

    The collection is created on first write with a single unnamed vector of
    the embedder's dimension.
    """

    def __init__(
        self,
        store: FaissVectorStore,
        embedder: Embedder,
        collection: str = "episodic",
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.collection = collection
        self.id_factory = id_factory
        self._pending: Set["asyncio.Task[List[EpisodicEntry]]"] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _ensure_collection(self) -> None:
        if not self.store.has_collection(self.collection):
            self.store.create_collection(self.collection, self.embedder.dimension)

    def build_entries(self, decision: Decision, query: Query, response_text: str) -> List[EpisodicEntry]:
        texts = [query.text, response_text]
        vecs = self.embedder.encode_texts(texts, batch_size=len(texts))
        stamps = [query.received_at, decision.decided_at]
        roles = [ROLE_USER, ROLE_ASSISTANT]
        return [
            EpisodicEntry(
                entry_id=self.id_factory(),
                role=role,
                text=text,
                embedding=vec,
                timestamp=stamp,
                session_id=query.session_id,
                intent=decision.final_intent,
                confidence=decision.confidence,
            )
            for role, text, vec, stamp in zip(roles, texts, vecs, stamps)
        ]

    def write(self, decision: Decision, query: Query, response_text: str) -> List[EpisodicEntry]:
        """Synchronous write. Raises whatever the embedder or store raises."""
        entries = self.build_entries(decision, query, response_text)
        self._ensure_collection()
        for e in entries:
            self.store.upsert(self.collection, e.entry_id, e.embedding, e.payload())
        logger.debug(
            "episodic write session=%s intent=%s entries=%d",
            query.session_id,
            decision.final_intent,
            len(entries),
        )
        return entries

    async def _write_safely(self, decision: Decision, query: Query, response_text: str) -> List[EpisodicEntry]:
        try:
            return await asyncio.to_thread(self.write, decision, query, response_text)
        except Exception:
            logger.exception("episodic memory write failed (session=%s)", query.session_id)
            return []

    def remember(self, decision: Decision, query: Query, response_text: str) -> "asyncio.Task[List[EpisodicEntry]]":
        """
        Schedule the write and return immediately.

        Must be called from inside a running event loop. The returned task
        never raises; it resolves to [] if the write failed.
        """
        task = asyncio.get_running_loop().create_task(self._write_safely(decision, query, response_text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled write (shutdown, tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def recall(self, text: str, session_id: Optional[str] = None, top_k: int = 5) -> List[EpisodicEntry]:
        """
        Most similar past turns, best first.

        Args:
            text: what to look for
            session_id: restrict to one conversation
            top_k: maximum entries returned
        """
        if not text.strip() or not self.store.has_collection(self.collection):
            return []
        vec = self.embedder.embed(text)
        flt = {"session_id": session_id} if session_id else None
        hits = self.store.search(self.collection, vec, top_k, filter=flt)
        return [
            EpisodicEntry(
                entry_id=h.id,
                role=str(h.payload["role"]),
                text=str(h.payload["text"]),
                embedding=None,
                timestamp=datetime.fromisoformat(str(h.payload["timestamp"])),
                session_id=h.payload.get("session_id"),
                intent=h.payload.get("intent"),
                confidence=float(h.payload.get("confidence") or 0.0),
                score=h.score,
            )
            for h in hits
        ]

    async def arecall(self, text: str, session_id: Optional[str] = None, top_k: int = 5) -> List[EpisodicEntry]:
        return await asyncio.to_thread(self.recall, text, session_id, top_k)
