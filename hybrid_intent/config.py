"""
config.py - Static configuration for the resolver.

=============================================================================
WHAT LIVES HERE
=============================================================================

Everything the resolver needs to know that does NOT change per request:

    - source trust weights (rule / vector / llm)
    - the tie-break epsilon
    - rule patterns and their fixed confidence
    - vector routing: model, collection scheme, thresholds, facet weights
    - language-model endpoint
    - per-source timeouts
    - episodic memory settings

Configuration is loaded ONCE at startup into frozen pydantic models and
shared read-only by every concurrent query. Nothing in the query path
mutates it.

=============================================================================
FILE FORMAT
=============================================================================

A single JSON document. Every section is optional:

    {
      "source_weights": {"rule": 0.6, "vector": 1.0, "llm": 1.2},
      "tie_epsilon": 1e-6,
      "rules": {"confidence": 0.75, "patterns": [{"phrase": "...", "intent": "..."}]},
      "vector": {"model_name": "all-MiniLM-L6-v2", "default_threshold": 0.78, ...},
      "llm": {"enabled": false, ...},
      "timeouts": {"vector_ms": 500, "llm_ms": 1500},
      "memory": {"enabled": true, "collection": "episodic"}
    }

Lookup order for the file: explicit path, then $HYBRID_INTENT_CONFIG, then
built-in defaults.

Pydantic does the field-level validation. Its ValidationError is re-raised
as ConfigurationError, which is meant to stop the process before it serves
a single query.
"""


from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional, Tuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from hybrid_intent.errors import ConfigurationError
from hybrid_intent.signals import CandidateSource

CONFIG_ENV_VAR = "HYBRID_INTENT_CONFIG"

DEFAULT_SOURCE_WEIGHTS: Dict[str, float] = {"rule": 0.6, "vector": 1.0, "llm": 1.2}
DEFAULT_FACET_WEIGHTS: Dict[str, float] = {"title": 0.5, "example": 1.0, "description": 0.7}


class ConfigSection(BaseModel):
    """Frozen section of the config file. Unknown keys are rejected."""

    model_config = ConfigDict(frozen=True, extra="forbid", protected_namespaces=())

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]):
        try:
            return cls.model_validate(dict(obj))
        except ValidationError as e:
            raise ConfigurationError(f"invalid {cls.__name__}: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


def _not_blank(name: str, value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError(f"{name} must not be empty")
    return value


# =============================================================================
# RULES
# =============================================================================


class RuleSpec(ConfigSection):
    """One trigger. Exactly one of phrase / regex is set."""

    intent: str
    phrase: Optional[str] = None
    regex: Optional[str] = None

    @field_validator("intent")
    @classmethod
    def intent_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError("rule has no intent")
        return v.strip()

    @field_validator("phrase")
    @classmethod
    def phrase_must_not_be_empty(cls, v):
        if v is not None and not v.strip():
            raise ValueError("rule has an empty phrase")
        return v

    @model_validator(mode="after")
    def exactly_one_trigger(self):
        if (self.phrase is None) == (self.regex is None):
            raise ValueError(
                f"rule for '{self.intent}' needs exactly one of 'phrase' or 'regex'"
            )
        return self


class RuleConfig(ConfigSection):
    confidence: float = Field(0.75, ge=0.0, le=1.0)
    patterns: Tuple[RuleSpec, ...] = ()


# =============================================================================
# VECTOR ROUTING
# =============================================================================


class VectorConfig(ConfigSection):
    """
    How the vector classifier finds and scores intent records.

    routing:
        "single"    - one shared collection, agent applied as a payload filter
        "per_agent" - one collection per agent, named "<collection>_<agent>"

    facet_combination:
        "weighted_sum" - sum(w * s) / sum(w)
        "weighted_max" - max(w * s) / max(w)
    """

    model_name: str = "all-MiniLM-L6-v2"
    collection: str = "intents"
    routing: Literal["single", "per_agent"] = "single"
    top_k: int = Field(8, gt=0)
    default_threshold: float = Field(0.78, ge=0.0, le=1.0)
    agent_thresholds: Dict[str, float] = Field(default_factory=dict)
    facet_weights: Dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_FACET_WEIGHTS), min_length=1
    )
    facet_combination: Literal["weighted_sum", "weighted_max"] = "weighted_sum"

    @field_validator("collection")
    @classmethod
    def collection_must_not_be_empty(cls, v):
        return _not_blank("vector.collection", v)

    @field_validator("agent_thresholds")
    @classmethod
    def thresholds_in_unit_interval(cls, v):
        for agent, t in v.items():
            if not 0.0 <= t <= 1.0:
                raise ValueError(f"threshold for agent '{agent}' must be in [0, 1], got {t}")
        return v

    @field_validator("facet_weights")
    @classmethod
    def facet_weights_positive(cls, v):
        for name, w in v.items():
            if w <= 0:
                raise ValueError(f"weight for facet '{name}' must be > 0, got {w}")
        return v

    def threshold_for(self, agent: Optional[str]) -> float:
        if agent is not None and agent in self.agent_thresholds:
            return self.agent_thresholds[agent]
        return self.default_threshold

    def collection_for(self, agent: Optional[str]) -> str:
        if self.routing == "per_agent" and agent:
            return f"{self.collection}_{agent}"
        return self.collection


# =============================================================================
# LANGUAGE MODEL, TIMEOUTS, MEMORY
# =============================================================================


class LLMConfig(ConfigSection):
    enabled: bool = False
    base_url: str = "http://localhost:11434/v1"
    model: str = "llama3.1"
    api_key_env: str = "OPENAI_API_KEY"
    intents: Tuple[str, ...] = ()

    @model_validator(mode="after")
    def base_url_is_http(self):
        if self.enabled and not self.base_url.startswith(("http://", "https://")):
            raise ValueError(f"llm.base_url is not an http(s) URL: '{self.base_url}'")
        return self

    def api_key(self) -> Optional[str]:
        return os.getenv(self.api_key_env) or None


class TimeoutConfig(ConfigSection):
    """Per-source deadlines. The rule matcher is synchronous and has none."""

    vector_ms: int = Field(500, gt=0)
    llm_ms: int = Field(1500, gt=0)

    @property
    def vector_s(self) -> float:
        return self.vector_ms / 1000.0

    @property
    def llm_s(self) -> float:
        return self.llm_ms / 1000.0


class MemoryConfig(ConfigSection):
    enabled: bool = True
    collection: str = "episodic"

    @field_validator("collection")
    @classmethod
    def collection_must_not_be_empty(cls, v):
        return _not_blank("memory.collection", v)


# =============================================================================
# TOP LEVEL
# =============================================================================


class ResolverConfig(ConfigSection):
    source_weights: Dict[CandidateSource, float] = Field(
        default_factory=lambda: {CandidateSource(k): v for k, v in DEFAULT_SOURCE_WEIGHTS.items()}
    )
    tie_epsilon: float = Field(1e-6, ge=0.0)
    rules: RuleConfig = Field(default_factory=RuleConfig)
    vector: VectorConfig = Field(default_factory=VectorConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)

    @field_validator("source_weights", mode="before")
    @classmethod
    def every_source_weighted(cls, v):
        raw = {getattr(k, "value", k): w for k, w in dict(v).items()}
        unknown = set(raw) - {s.value for s in CandidateSource}
        if unknown:
            raise ValueError(f"unknown source(s) in source_weights: {sorted(unknown)}")
        for source in CandidateSource:
            if source.value not in raw:
                raise ValueError(f"missing source weight for '{source.value}'")
            if float(raw[source.value]) < 0:
                raise ValueError(f"source weight for '{source.value}' is negative")
        return raw


def load_config(path: Optional[str] = None) -> ResolverConfig:
    """
    Load and validate the resolver configuration.

    Args:
        path: JSON config file. Falls back to $HYBRID_INTENT_CONFIG, then to
              built-in defaults.

    Raises:
        ConfigurationError: unreadable file, invalid JSON, or invalid values.
    """
    path = path or os.getenv(CONFIG_ENV_VAR)
    if not path:
        return ResolverConfig.from_dict({})

    p = Path(path)
    if not p.is_file():
        raise ConfigurationError(f"config file not found: {p}")
    try:
        with open(p, "r", encoding="utf-8") as f:
            obj = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"config file {p} is not valid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise ConfigurationError(f"config file {p} must contain a JSON object")
    return ResolverConfig.from_dict(obj)
