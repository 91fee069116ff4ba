"""
intent_faiss.py - Embedding, FAISS storage and the vector intent classifier.

=============================================================================
OVERVIEW
=============================================================================

This module is the vector half of hybrid intent resolution:

    1. Intent records describe each known intent with a few named FACETS
       ("title", "example", "description"), each a short piece of text.
    2. We embed every facet with a sentence-transformers model and store the
       vectors in FAISS, one index per facet ("named vectors").
    3. At query time we embed the query once, search every facet index,
       combine the per-facet similarities with configured facet weights, and
       keep the best intent if it clears a minimum-similarity floor.

The same store also holds episodic memory (see memory.py): a collection with
a single unnamed vector per conversation turn.

=============================================================================
KEY ARCHITECTURAL DECISIONS
=============================================================================

1. FAISS AS THE LOCAL VECTOR INDEX
   FaissVectorStore exposes the narrow surface a hosted vector service would:
   create_collection / upsert / search with a payload filter. Swapping in a
   remote service means reimplementing those few methods, nothing else.

2. ONE FAISS INDEX PER NAMED VECTOR
   A collection's schema maps vector name -> dimension. Each name gets its own
   IndexIDMap2(IndexFlatIP) so records can be replaced by id. A record is a
   flat map of facet -> vector; no per-facet record subtypes.

3. L2 NORMALIZATION + INNER PRODUCT
   All vectors are unit length, so inner product == cosine similarity.

4. THE FLOOR IS NOT OPTIONAL
   A match below the threshold (default 0.78) is dropped, not passed on with
   a low confidence. Weak vector noise never reaches the scorer.

=============================================================================
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

import faiss  # type: ignore
import numpy as np
from sentence_transformers import SentenceTransformer

from hybrid_intent.config import VectorConfig
from hybrid_intent.errors import (
    ConfigurationError,
    InvalidVectorSize,
    NotFound,
    ServiceUnavailable,
)
from hybrid_intent.signals import Candidate, CandidateSource

logger = logging.getLogger(__name__)

# Name used for collections that store a single, unnamed vector per point.
DEFAULT_VECTOR = "default"

VectorInput = Union[np.ndarray, Mapping[str, np.ndarray]]
MetadataFilter = Mapping[str, Any]


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass(frozen=True)
class Example:
    """
    A single labeled query, as read from a test set.

    Each line in the JSONL file looks like: {"text": "book a slot", "intent": "appointment_scheduling"}
    """

    text: str
    intent: str  # ground-truth label, "none" for queries that should not resolve


@dataclass(frozen=True)
class IntentRecord:
    """
    Stored representation of one known intent.

    facets maps facet name -> text and is what build_intents() embeds.
    vectors maps facet name -> precomputed vector; when a facet has a vector
    here it is used as-is instead of embedding the text.

    metadata is copied into the point payload. The keys the classifier knows
    about are "agent" (routing) and, for filtering, anything else you like:
    "domain", "category", "tags".
    """

    intent_id: str
    facets: Mapping[str, str] = field(default_factory=dict)
    metadata: Mapping[str, Any] = field(default_factory=dict)
    vectors: Mapping[str, np.ndarray] = field(default_factory=dict)

    @property
    def agent(self) -> Optional[str]:
        agent = self.metadata.get("agent")
        return str(agent) if agent else None

    @property
    def point_id(self) -> str:
        # The same intent may exist once per agent in a shared collection.
        return f"{self.agent}:{self.intent_id}" if self.agent else self.intent_id

    def payload(self) -> Dict[str, Any]:
        out = dict(self.metadata)
        out["intent"] = self.intent_id
        out["facet_texts"] = dict(self.facets)
        return out


@dataclass(frozen=True)
class SearchHit:
    """One point returned by FaissVectorStore.search()."""

    id: str
    score: float  # cosine similarity, roughly [-1, 1]
    payload: Mapping[str, Any]


@dataclass(frozen=True)
class IntentMatch:
    """A record considered by the vector classifier, with its per-facet evidence."""

    intent: str
    point_id: str
    score: float  # combined facet score in [0, 1]
    facet_scores: Mapping[str, float]


@dataclass(frozen=True)
class VectorClassification:
    """
    Everything the vector classifier decided for one query.

    candidate is None when we abstained: empty query, no matches, or the best
    match below the floor. matches is kept for debugging either way.
    """

    candidate: Optional[Candidate]
    best_intent: Optional[str]
    best_score: float
    threshold: float
    collection: str
    matches: List[IntentMatch]

    @property
    def abstained(self) -> bool:
        return self.candidate is None


@dataclass(frozen=True)
class TimingsMs:
    """Timing breakdown for one vector classification call."""

    encode_ms: float
    search_ms: float
    total_ms: float


# =============================================================================
# DATA LOADING
# =============================================================================


def read_jsonl_examples(path: str) -> List[Example]:
    """Read labeled test queries, one JSON object per line."""
    out: List[Example] = []
    with open(path, "r", encoding="utf-8") as f:
        for raw in f:
            line = raw.strip()
            if not line:
                continue
            obj = json.loads(line)
            out.append(Example(text=str(obj["text"]), intent=str(obj["intent"])))
    return out


def read_jsonl_intents(path: str) -> List[IntentRecord]:
    """
    Read intent records from a JSONL file.

    One record per line:
        {"intent": "appointment_scheduling",
         "facets": {"title": "Appointment scheduling",
                    "example": "book an appointment for tuesday",
                    "description": "User wants to create or move a booking"},
         "metadata": {"agent": "clinic", "domain": "health", "tags": ["calendar"]}}

    Raises:
        ConfigurationError: a line with no intent or no facets
    """
    out: List[IntentRecord] = []
    with open(path, "r", encoding="utf-8") as f:
        for lineno, raw in enumerate(f, start=1):
            line = raw.strip()
            if not line:
                continue
            obj = json.loads(line)
            intent = str(obj.get("intent") or "").strip()
            facets = {str(k): str(v) for k, v in dict(obj.get("facets") or {}).items()}
            if not intent or not facets:
                raise ConfigurationError(f"{path}:{lineno}: intent record needs 'intent' and 'facets'")
            out.append(
                IntentRecord(
                    intent_id=intent,
                    facets=facets,
                    metadata=dict(obj.get("metadata") or {}),
                )
            )
    return out


# =============================================================================
# VECTOR NORMALIZATION
# =============================================================================


def l2_normalize_rows(x: np.ndarray) -> np.ndarray:
    """
    Normalize each row of a matrix to unit length.

    With unit vectors, FAISS inner product is cosine similarity.
    """
    norms = np.linalg.norm(x, axis=1, keepdims=True)
    norms = np.maximum(norms, 1e-12)
    return x / norms


def _as_row(vector: np.ndarray, expected_dim: int, name: str) -> np.ndarray:
    arr = np.asarray(vector, dtype="float32")
    if arr.ndim == 2 and arr.shape[0] == 1:
        arr = arr[0]
    if arr.ndim != 1:
        raise InvalidVectorSize(expected_dim, int(arr.size), name)
    if arr.shape[0] != expected_dim:
        raise InvalidVectorSize(expected_dim, int(arr.shape[0]), name)
    return l2_normalize_rows(arr.reshape(1, -1))


# =============================================================================
# EMBEDDER
# =============================================================================


class Embedder:
    """
    Wrapper around SentenceTransformer for encoding text into unit vectors.

    The default model is loaded at construction (slow, ~2-5 s). Other model
    ids passed to embed(..., model_id=...) are loaded on first use and cached.

    IMPORTANT: the model used at query time must match the model used to build
    the intent collection. Embeddings from different models are not
    compatible; FaissVectorStore records the build model for this check.

    Args:
        model_name: HuggingFace model name (e.g. "all-MiniLM-L6-v2")
        model: an already-constructed model (anything with SentenceTransformer's
               encode() and get_sentence_embedding_dimension()); skips loading
    """

    def __init__(self, model_name: str, model: Any = None) -> None:
        self.model_name = model_name
        self._models: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self.model = model if model is not None else self._load(model_name)
        self._models[model_name] = self.model

    @staticmethod
    def _load(model_name: str) -> Any:
        try:
            return SentenceTransformer(model_name)
        except Exception as e:  # weights download, missing files, bad name
            raise ServiceUnavailable(f"cannot load embedding model '{model_name}': {e}") from e

    def _model_for(self, model_id: Optional[str]) -> Any:
        if not model_id or model_id == self.model_name:
            return self.model
        with self._lock:
            if model_id not in self._models:
                logger.info("Loading embedding model %s", model_id)
                self._models[model_id] = self._load(model_id)
            return self._models[model_id]

    @property
    def dimension(self) -> int:
        return int(self.model.get_sentence_embedding_dimension())

    def encode_texts(
        self,
        texts: List[str],
        batch_size: int = 64,
        model_id: Optional[str] = None,
    ) -> np.ndarray:
        """
        Encode a batch of texts.

        Returns:
            float32 array of shape (len(texts), dim); each row unit length
        """
        emb = self._model_for(model_id).encode(
            texts,
            batch_size=batch_size,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        arr = np.asarray(emb, dtype="float32")
        return l2_normalize_rows(arr)

    def encode_query(self, text: str, model_id: Optional[str] = None) -> np.ndarray:
        """Encode one query; shape (1, dim) because FAISS searches 2D input."""
        return self.encode_texts([text], batch_size=1, model_id=model_id)

    def embed(self, text: str, model_id: Optional[str] = None) -> np.ndarray:
        """Encode one text into a 1-D unit vector."""
        return self.encode_query(text, model_id=model_id)[0]


# =============================================================================
# FAISS VECTOR STORE
# =============================================================================


class _Collection:
    """One named collection: a FAISS index per vector name plus payloads."""

    def __init__(self, name: str, schema: Mapping[str, int]) -> None:
        self.name = name
        self.schema: Dict[str, int] = {str(k): int(v) for k, v in schema.items()}
        self.indexes: Dict[str, faiss.Index] = {
            vec_name: faiss.IndexIDMap2(faiss.IndexFlatIP(dim))
            for vec_name, dim in self.schema.items()
        }
        self.int_ids: Dict[str, int] = {}  # point id -> FAISS int64 id
        self.point_ids: Dict[int, str] = {}  # FAISS int64 id -> point id
        self.members: Dict[str, Set[int]] = {vec_name: set() for vec_name in self.schema}
        self.payloads: Dict[str, Dict[str, Any]] = {}
        self.next_int_id = 0

    def __len__(self) -> int:
        return len(self.payloads)


class FaissVectorStore:
    """
    A minimal multi-collection vector store on top of FAISS.

    Operations mirror a hosted vector search service:

        create_collection(name, {"title": 384, "example": 384})
        upsert(name, point_id, {"title": vec, "example": vec}, payload)
        search(name, query_vec, top_k, filter={"domain": "health"}, using="example")

    Collections with a single unnamed vector use the schema
    {"default": dim} and may pass a bare array to upsert/search.

    All operations are serialized with a lock: episodic writes happen from
    worker threads while queries search.
    """

    def __init__(self, model_name: Optional[str] = None) -> None:
        self.model_name = model_name
        self._collections: Dict[str, _Collection] = {}
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Collections
    # -------------------------------------------------------------------------

    def create_collection(self, name: str, vector_schema: Union[int, Mapping[str, int]]) -> None:
        """
        Create an empty collection. Re-creating with the same schema is a no-op.

        Args:
            name: collection name
            vector_schema: dimension (single unnamed vector) or name -> dimension

        Raises:
            ValueError: empty schema, non-positive dimension, or an existing
                        collection with a different schema
        """
        schema = {DEFAULT_VECTOR: vector_schema} if isinstance(vector_schema, int) else dict(vector_schema)
        if not schema or any(int(d) <= 0 for d in schema.values()):
            raise ValueError(f"invalid vector schema for collection '{name}': {schema!r}")
        with self._lock:
            existing = self._collections.get(name)
            if existing is not None:
                if existing.schema != {k: int(v) for k, v in schema.items()}:
                    raise ValueError(f"collection '{name}' already exists with schema {existing.schema}")
                return
            self._collections[name] = _Collection(name, schema)

    def has_collection(self, name: str) -> bool:
        with self._lock:
            return name in self._collections

    def collections(self) -> List[str]:
        with self._lock:
            return sorted(self._collections)

    def drop_collection(self, name: str) -> None:
        with self._lock:
            if self._collections.pop(name, None) is None:
                raise NotFound(f"unknown collection '{name}'")

    def schema(self, name: str) -> Mapping[str, int]:
        return MappingProxyType(dict(self._get(name).schema))

    def count(self, name: str) -> int:
        with self._lock:
            return len(self._get(name))

    def _get(self, name: str) -> _Collection:
        coll = self._collections.get(name)
        if coll is None:
            raise NotFound(f"unknown collection '{name}'")
        return coll

    # -------------------------------------------------------------------------
    # Points
    # -------------------------------------------------------------------------

    def upsert(
        self,
        collection: str,
        point_id: str,
        vectors: VectorInput,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """
        Insert or replace a point.

        A point may carry a subset of the collection's named vectors; facets
        it lacks simply never match it.

        Raises:
            NotFound: unknown collection or unknown vector name
            InvalidVectorSize: dimension mismatch
        """
        with self._lock:
            coll = self._get(collection)
            named = self._named(coll, vectors)
            if not named:
                raise ValueError(f"point '{point_id}' has no vectors")
            # Validate everything before touching the indexes.
            rows = {name: _as_row(vec, coll.schema[name], name) for name, vec in named.items()}

            int_id = coll.int_ids.get(point_id)
            if int_id is None:
                int_id = coll.next_int_id
                coll.next_int_id += 1
                coll.int_ids[point_id] = int_id
                coll.point_ids[int_id] = point_id
            else:
                ids = np.array([int_id], dtype="int64")
                for index in coll.indexes.values():
                    index.remove_ids(ids)
                for members in coll.members.values():
                    members.discard(int_id)

            ids = np.array([int_id], dtype="int64")
            for name, row in rows.items():
                coll.indexes[name].add_with_ids(row, ids)  # type: ignore[call-arg]
                coll.members[name].add(int_id)
            coll.payloads[point_id] = dict(payload or {})

    def get_payload(self, collection: str, point_id: str) -> Mapping[str, Any]:
        with self._lock:
            coll = self._get(collection)
            if point_id not in coll.payloads:
                raise NotFound(f"unknown point '{point_id}' in '{collection}'")
            return MappingProxyType(coll.payloads[point_id])

    @staticmethod
    def _named(coll: _Collection, vectors: VectorInput) -> Dict[str, np.ndarray]:
        if isinstance(vectors, Mapping):
            unknown = set(vectors) - set(coll.schema)
            if unknown:
                raise NotFound(f"unknown vector name(s) {sorted(unknown)} in '{coll.name}'")
            return dict(vectors)
        if DEFAULT_VECTOR not in coll.schema:
            raise NotFound(f"collection '{coll.name}' has named vectors; pass a mapping")
        return {DEFAULT_VECTOR: vectors}

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    def search(
        self,
        collection: str,
        vector: np.ndarray,
        top_k: int,
        filter: Optional[MetadataFilter] = None,
        using: Optional[str] = None,
    ) -> List[SearchHit]:
        """
        Return up to top_k points closest to `vector`, best first.

        Args:
            collection: collection name
            vector: query vector (1-D or shape (1, dim))
            top_k: maximum number of hits
            filter: payload predicate, see matches_filter()
            using: which named vector to search; may be omitted for
                   single-vector collections

        Raises:
            NotFound: unknown collection or vector name
            InvalidVectorSize: query dimension mismatch
        """
        with self._lock:
            coll = self._get(collection)
            name = using or DEFAULT_VECTOR
            if name not in coll.indexes:
                raise NotFound(f"collection '{collection}' has no vector named '{name}'")
            index = coll.indexes[name]
            q = _as_row(vector, coll.schema[name], name)
            if top_k <= 0 or index.ntotal == 0:
                return []

            # Flat search is exact; with a filter we score everything and
            # filter afterwards.
            k = int(index.ntotal) if filter else min(int(top_k), int(index.ntotal))
            scores, ids = index.search(q, k)  # type: ignore[call-arg]

            hits: List[SearchHit] = []
            for s, i in zip(scores[0].tolist(), ids[0].tolist()):
                if i < 0:
                    continue  # FAISS pads with -1 when k > ntotal
                point_id = coll.point_ids[int(i)]
                payload = coll.payloads[point_id]
                if filter and not matches_filter(payload, filter):
                    continue
                hits.append(SearchHit(id=point_id, score=float(s), payload=MappingProxyType(payload)))

        # Equal scores come back in insertion order; sort by id for stability.
        hits.sort(key=lambda h: (-h.score, h.id))
        return hits[:top_k]

    def score_points(
        self,
        collection: str,
        vector: np.ndarray,
        point_ids: Iterable[str],
        using: Optional[str] = None,
    ) -> Dict[str, float]:
        """
        Exact similarity between `vector` and the named vector of each listed
        point, whatever its rank. Points that lack that vector are left out.

        Raises:
            NotFound: unknown collection or vector name
            InvalidVectorSize: query dimension mismatch
        """
        with self._lock:
            coll = self._get(collection)
            name = using or DEFAULT_VECTOR
            if name not in coll.indexes:
                raise NotFound(f"collection '{collection}' has no vector named '{name}'")
            index = coll.indexes[name]
            q = _as_row(vector, coll.schema[name], name)[0]
            scores: Dict[str, float] = {}
            for point_id in point_ids:
                int_id = coll.int_ids.get(point_id)
                if int_id is None or int_id not in coll.members[name]:
                    continue
                stored = index.reconstruct(int_id)
                scores[point_id] = float(np.dot(stored, q))
            return scores

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def save(self, directory: str) -> None:
        """
        Write every collection to `directory`.

        Layout:
            <collection>.<vector>.faiss   one binary FAISS index per named vector
            <collection>_meta.json        schema, id maps, payloads, build info
        """
        out = Path(directory)
        out.mkdir(parents=True, exist_ok=True)
        with self._lock:
            for coll in self._collections.values():
                for name, index in coll.indexes.items():
                    faiss.write_index(index, str(out / f"{coll.name}.{name}.faiss"))
                meta = {
                    "collection": coll.name,
                    "model_name": self.model_name,
                    "saved_at_unix": time.time(),
                    "faiss_index_type": "IndexIDMap2(IndexFlatIP)",
                    "normalized": True,
                    "schema": coll.schema,
                    "int_ids": coll.int_ids,
                    "payloads": coll.payloads,
                    "next_int_id": coll.next_int_id,
                }
                with open(out / f"{coll.name}_meta.json", "w", encoding="utf-8") as f:
                    json.dump(meta, f, indent=2)
        logger.info("Saved %d collection(s) to %s", len(self._collections), out)

    @staticmethod
    def load(directory: str) -> "FaissVectorStore":
        """
        Load every collection saved in `directory`.

        Raises:
            NotFound: directory has no saved collections
        """
        src = Path(directory)
        meta_files = sorted(src.glob("*_meta.json"))
        if not meta_files:
            raise NotFound(f"no saved collections in {src}")

        store = FaissVectorStore()
        for meta_path in meta_files:
            with open(meta_path, "r", encoding="utf-8") as f:
                meta = json.load(f)
            coll = _Collection(meta["collection"], meta["schema"])
            for name in coll.schema:
                coll.indexes[name] = faiss.read_index(str(src / f"{coll.name}.{name}.faiss"))
                coll.members[name] = set(faiss.vector_to_array(coll.indexes[name].id_map).tolist())
            coll.int_ids = {str(k): int(v) for k, v in meta["int_ids"].items()}
            coll.point_ids = {v: k for k, v in coll.int_ids.items()}
            coll.payloads = {str(k): dict(v) for k, v in meta["payloads"].items()}
            coll.next_int_id = int(meta["next_int_id"])
            store._collections[coll.name] = coll
            store.model_name = store.model_name or meta.get("model_name")
        return store

    # -------------------------------------------------------------------------
    # Index building (offline, or on catalogue reload)
    # -------------------------------------------------------------------------

    @staticmethod
    def build_intents(
        records: Iterable[IntentRecord],
        embedder: Embedder,
        config: VectorConfig,
        batch_size: int = 64,
    ) -> "FaissVectorStore":
        """
        Build a fresh store holding the intent catalogue.

        Every facet text of every record is embedded in one batch. With
        routing="per_agent" records are split into "<collection>_<agent>"
        collections; records without an agent land in the base collection.

        Raises:
            ConfigurationError: duplicate point ids
        """
        records = list(records)
        store = FaissVectorStore(model_name=embedder.model_name)

        seen: Dict[str, str] = {}
        for r in records:
            key = f"{config.collection_for(r.agent)}/{r.point_id}"
            if key in seen:
                raise ConfigurationError(f"duplicate intent record '{r.point_id}'")
            seen[key] = r.intent_id

        # Batch-embed every facet text that has no precomputed vector.
        to_embed: List[Tuple[int, str]] = []
        texts: List[str] = []
        for ri, r in enumerate(records):
            for facet, text in r.facets.items():
                if facet not in r.vectors:
                    to_embed.append((ri, facet))
                    texts.append(text)
        embedded: Dict[Tuple[int, str], np.ndarray] = {}
        if texts:
            vecs = embedder.encode_texts(texts, batch_size=batch_size)
            for key, vec in zip(to_embed, vecs):
                embedded[key] = vec

        dim = embedder.dimension
        for ri, r in enumerate(records):
            vectors: Dict[str, np.ndarray] = dict(r.vectors)
            for facet in r.facets:
                if facet not in vectors:
                    vectors[facet] = embedded[(ri, facet)]
            name = config.collection_for(r.agent)
            schema = {facet: dim for facet in config.facet_weights}
            schema.update({facet: dim for facet in vectors})
            if not store.has_collection(name):
                store.create_collection(name, schema)
            else:
                # Facets outside the configured weights get their own index.
                coll = store._get(name)
                for facet in vectors:
                    if facet not in coll.schema:
                        coll.schema[facet] = dim
                        coll.indexes[facet] = faiss.IndexIDMap2(faiss.IndexFlatIP(dim))
            store.upsert(name, r.point_id, vectors, r.payload())

        if not store.has_collection(config.collection):
            store.create_collection(config.collection, {f: dim for f in config.facet_weights})
        logger.info(
            "Built intent index: %d record(s) in %d collection(s)",
            len(records),
            len(store.collections()),
        )
        return store


def matches_filter(payload: Mapping[str, Any], filter: MetadataFilter) -> bool:
    """
    Payload predicate used by search().

    Every key in `filter` must match:
        - list-valued expectation: payload value equals any member
        - list-valued payload (e.g. tags): contains the expected value
        - otherwise: equality
    """
    for key, expected in filter.items():
        if key not in payload:
            return False
        actual = payload[key]
        wanted = list(expected) if isinstance(expected, (list, tuple, set, frozenset)) else [expected]
        if isinstance(actual, (list, tuple, set, frozenset)):
            if not any(w in actual for w in wanted):
                return False
        elif actual not in wanted:
            return False
    return True


# =============================================================================
# FACET COMBINATION
# =============================================================================


def combine_facet_scores(
    facet_scores: Mapping[str, float],
    facet_weights: Mapping[str, float],
    mode: str = "weighted_sum",
) -> float:
    """
    Collapse per-facet cosine similarities into one score in [0, 1].

    Only facets in `facet_weights` count. A facet with no score contributes 0.
    Negative similarities are clamped to 0.

        weighted_sum:  sum(w_f * s_f) / sum(w_f)
        weighted_max:  max(w_f * s_f) / max(w_f)

    Example with weights title=0.5, example=1.0, description=0.7 and scores
    title=0.60, example=0.95, description=0.80:

        weighted_sum = (0.30 + 0.95 + 0.56) / 2.2 = 0.8227
        weighted_max = 0.95 / 1.0             = 0.95
    """
    if not facet_weights:
        return 0.0
    weighted = {
        f: w * min(1.0, max(0.0, float(facet_scores.get(f, 0.0))))
        for f, w in facet_weights.items()
    }
    if mode == "weighted_sum":
        total_w = sum(facet_weights.values())
        score = sum(weighted.values()) / total_w if total_w > 0 else 0.0
    elif mode == "weighted_max":
        max_w = max(facet_weights.values())
        score = max(weighted.values()) / max_w if max_w > 0 else 0.0
    else:
        raise ConfigurationError(f"unknown facet combination '{mode}'")
    return float(min(1.0, max(0.0, score)))


# =============================================================================
# VECTOR CLASSIFIER
# =============================================================================


class VectorClassifier:
    """
    Query text -> at most one vector Candidate.

    THE DECISION LOGIC:
    -------------------
    1. Normalize the query; empty means no candidate.
    2. Embed it once.
    3. Pick the collection (routing) and build the payload filter
       (agent in "single" routing, plus any caller filter).
    4. Search each configured facet that the collection has, top_k each.
       Every record found on any facet is then scored on all facets.
    5. Combine per-record facet scores with the facet weights.
    6. Best record wins; ties go to the smaller intent id.
    7. Below the agent's threshold (default 0.78): no candidate.

    The store reference is swapped wholesale by reload(); a query already in
    flight keeps searching the store it started with.

    aclassify() runs on a small executor owned by the classifier. A timed-out
    or cancelled query stops being awaited but its search finishes in the
    background. It occupies a slot of this executor only, never one of the
    default executor that episodic memory writes run on.
    """

    def __init__(
        self,
        store: FaissVectorStore,
        embedder: Embedder,
        config: VectorConfig,
        max_workers: int = 4,
    ) -> None:
        self._store = store
        self.embedder = embedder
        self.config = config
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="vector-search"
        )

    def close(self) -> None:
        """Stop the search executor without waiting for searches in flight."""
        self._executor.shutdown(wait=False)

    @property
    def store(self) -> FaissVectorStore:
        return self._store

    @staticmethod
    def normalize_query(text: str) -> str:
        """Strip and collapse whitespace. Case is left to the model."""
        return " ".join((text or "").strip().split())

    def reload(
        self,
        records: Iterable[IntentRecord],
        agents: Iterable[Optional[str]] = (None,),
        batch_size: int = 64,
    ) -> FaissVectorStore:
        """
        Re-embed the intent catalogue and swap it in.

        The new store is fully built and checked before the single reference
        assignment, so concurrent queries see either the old catalogue or the
        new one. On ConfigurationError the old catalogue stays in service.
        """
        new_store = FaissVectorStore.build_intents(records, self.embedder, self.config, batch_size)
        self._check_store(new_store, agents)
        self._store = new_store
        logger.info("Intent catalogue reloaded (%s)", ", ".join(new_store.collections()))
        return new_store

    def check_ready(self, agents: Iterable[Optional[str]] = (None,)) -> None:
        """
        Startup check: collections exist, facets line up, model matches.

        Raises:
            ConfigurationError: anything that would make every query fail
        """
        self._check_store(self._store, agents)

    def _check_store(self, store: FaissVectorStore, agents: Iterable[Optional[str]]) -> None:
        if store.model_name and store.model_name != self.embedder.model_name:
            raise ConfigurationError(
                f"intent index was built with '{store.model_name}' "
                f"but the embedder uses '{self.embedder.model_name}'"
            )
        for agent in agents:
            name = self.config.collection_for(agent)
            if not store.has_collection(name):
                raise ConfigurationError(f"unknown collection '{name}'")
            schema = store.schema(name)
            if DEFAULT_VECTOR not in schema and not set(schema) & set(self.config.facet_weights):
                raise ConfigurationError(
                    f"collection '{name}' has none of the configured facets "
                    f"{sorted(self.config.facet_weights)}"
                )
            if self.embedder.dimension not in set(schema.values()):
                raise ConfigurationError(
                    f"collection '{name}' dimensions {sorted(set(schema.values()))} "
                    f"do not match embedder dimension {self.embedder.dimension}"
                )

    def classify(
        self,
        query: str,
        agent: Optional[str] = None,
        filter: Optional[MetadataFilter] = None,
    ) -> Optional[Candidate]:
        result, _ = self.classify_with_timings(query, agent=agent, filter=filter)
        return result.candidate

    async def aclassify(
        self,
        query: str,
        agent: Optional[str] = None,
        filter: Optional[MetadataFilter] = None,
    ) -> Optional[Candidate]:
        """classify() on the search executor; encoding and FAISS search both block."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.classify, query, agent, filter)

    def classify_with_timings(
        self,
        query: str,
        agent: Optional[str] = None,
        filter: Optional[MetadataFilter] = None,
    ) -> Tuple[VectorClassification, TimingsMs]:
        """
        Classify and report where the time went.

        Raises:
            NotFound / InvalidVectorSize / ServiceUnavailable: store or model
            problems. The resolver turns these into an absent candidate.
        """
        store = self._store
        threshold = self.config.threshold_for(agent)
        collection = self.config.collection_for(agent)

        q = self.normalize_query(query)
        if not q:
            empty = VectorClassification(
                candidate=None,
                best_intent=None,
                best_score=0.0,
                threshold=threshold,
                collection=collection,
                matches=[],
            )
            return empty, TimingsMs(encode_ms=0.0, search_ms=0.0, total_ms=0.0)

        t0 = time.perf_counter_ns()
        q_vec = self.embedder.embed(q)
        t1 = time.perf_counter_ns()

        search_filter: Dict[str, Any] = dict(filter or {})
        if agent and self.config.routing == "single":
            search_filter["agent"] = agent

        schema = store.schema(collection)
        if DEFAULT_VECTOR in schema:
            facets = [DEFAULT_VECTOR]
            weights: Mapping[str, float] = {DEFAULT_VECTOR: 1.0}
        else:
            facets = sorted(f for f in self.config.facet_weights if f in schema)
            weights = {f: self.config.facet_weights[f] for f in facets}
            if not facets:
                raise NotFound(f"collection '{collection}' has none of the configured facets")

        per_point: Dict[str, Dict[str, float]] = {}
        intents: Dict[str, str] = {}
        for facet in facets:
            hits = store.search(
                collection,
                q_vec,
                self.config.top_k,
                filter=search_filter or None,
                using=facet,
            )
            for h in hits:
                per_point.setdefault(h.id, {})[facet] = h.score
                intents[h.id] = str(h.payload.get("intent", h.id))
        # A point that made the top_k on one facet is scored on every facet,
        # so its combined score never depends on how it ranked elsewhere.
        for facet in facets:
            missing = [pid for pid, scores in per_point.items() if facet not in scores]
            if missing:
                for pid, s in store.score_points(collection, q_vec, missing, using=facet).items():
                    per_point[pid][facet] = s
        t2 = time.perf_counter_ns()

        matches = [
            IntentMatch(
                intent=intents[pid],
                point_id=pid,
                score=combine_facet_scores(scores, weights, self.config.facet_combination),
                facet_scores=MappingProxyType(scores),
            )
            for pid, scores in per_point.items()
        ]
        matches.sort(key=lambda m: (-m.score, m.intent, m.point_id))

        candidate: Optional[Candidate] = None
        best_intent: Optional[str] = None
        best_score = 0.0
        if matches:
            best_intent = matches[0].intent
            best_score = matches[0].score
            if best_score >= threshold:
                t3 = time.perf_counter_ns()
                candidate = Candidate(
                    source=CandidateSource.VECTOR,
                    intent_label=best_intent,
                    confidence=best_score,
                    latency_ms=int((t3 - t0) / 1e6),
                )

        result = VectorClassification(
            candidate=candidate,
            best_intent=best_intent,
            best_score=best_score,
            threshold=threshold,
            collection=collection,
            matches=matches,
        )
        t4 = time.perf_counter_ns()
        timings = TimingsMs(
            encode_ms=(t1 - t0) / 1e6,
            search_ms=(t2 - t1) / 1e6,
            total_ms=(t4 - t0) / 1e6,
        )
        return result, timings
