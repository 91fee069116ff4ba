"""
errors.py - Exception taxonomy for hybrid intent resolution.

Two families matter at runtime:

    ServiceTimeout / ServiceFailure
        Raised by the external collaborators (embedder, vector store, LLM).
        The resolver catches them per source and turns them into an absent
        candidate. They never reach the scorer.

    ConfigurationError
        Raised while loading configuration or wiring the resolver. Fatal at
        startup: a resolver with an invalid configuration must not serve.

An "absent signal" is not an exception at all. A classifier that has no
opinion returns None.
"""

from __future__ import annotations


class HybridIntentError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(HybridIntentError):
    """Missing weight, malformed pattern, unknown collection, bad threshold."""


class ServiceTimeout(HybridIntentError):
    """An external call exceeded its deadline."""


class ServiceFailure(HybridIntentError):
    """An external call errored."""


class ServiceUnavailable(ServiceFailure):
    """The external service (or local model) could not be reached or loaded."""


class RateLimited(ServiceFailure):
    """The language-model provider rejected the call with a rate limit."""


class NotFound(ServiceFailure):
    """Unknown collection or unknown named vector."""


class InvalidVectorSize(ServiceFailure):
    """A vector's dimension does not match the collection schema."""

    def __init__(self, expected: int, got: int, name: str = "") -> None:
        label = f" for vector '{name}'" if name else ""
        super().__init__(f"expected dimension {expected}{label}, got {got}")
        self.expected = expected
        self.got = got
