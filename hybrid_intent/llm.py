"""
llm.py - Language-model intent classifier.

The language model is an external collaborator: we only define the call
shape and one HTTP implementation for OpenAI-compatible chat endpoints
(OpenAI, vLLM, Ollama's /v1, ...).

    classify(query, context=None) -> (intent_label, confidence)

It can be slow (hundreds of milliseconds) and it can fail. The resolver
wraps every call in a timeout and treats any failure as an absent candidate,
so implementations only need to raise the right error type:

    ServiceTimeout   the HTTP call timed out
    RateLimited      HTTP 429
    ServiceFailure   anything else (5xx, transport error, unparsable reply)
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx

from hybrid_intent.config import LLMConfig
from hybrid_intent.errors import RateLimited, ServiceFailure, ServiceTimeout

logger = logging.getLogger(__name__)

Context = Mapping[str, Any]

SYSTEM_PROMPT = (
    "You classify the intent of a user's message. "
    "Reply with a single JSON object and nothing else: "
    '{"intent": "<label>", "confidence": <number between 0 and 1>}. '
)


class LanguageModelClassifier(ABC):
    """Interface for the language-model signal."""

    @abstractmethod
    async def classify(self, query: str, context: Optional[Context] = None) -> Tuple[str, float]:
        """
        Args:
            query: the user's message
            context: optional extra signal, e.g. {"previous_decision": {...},
                     "recent_turns": [{"role": "user", "text": "..."}]}

        Returns:
            (intent_label, model-reported confidence)
        """

    async def aclose(self) -> None:
        """Release any held connections."""


def parse_classification(content: str, allowed: Sequence[str] = ()) -> Tuple[str, float]:
    """
    Pull (intent, confidence) out of the model's reply.

    Tolerates prose or code fences around the JSON object. Confidence is
    clamped to [0, 1].

    Raises:
        ServiceFailure: no JSON object, missing intent, non-numeric confidence,
                        or an intent outside `allowed` (when given)
    """
    start = content.find("{")
    end = content.rfind("}")
    if start < 0 or end <= start:
        raise ServiceFailure(f"no JSON object in model reply: {content[:80]!r}")
    try:
        obj = json.loads(content[start : end + 1])
    except json.JSONDecodeError as e:
        raise ServiceFailure(f"unparsable model reply: {e}") from e

    intent = str(obj.get("intent") or "").strip()
    if not intent:
        raise ServiceFailure("model reply has no intent")
    if allowed and intent not in allowed:
        raise ServiceFailure(f"model chose unknown intent '{intent}'")
    try:
        confidence = float(obj.get("confidence", 0.0))
    except (TypeError, ValueError) as e:
        raise ServiceFailure(f"non-numeric confidence in model reply: {obj.get('confidence')!r}") from e
    return intent, min(1.0, max(0.0, confidence))


class ChatCompletionsClassifier(LanguageModelClassifier):
    """
    Classifier backed by an OpenAI-compatible /chat/completions endpoint.

    One attempt per call; retrying is left to whoever counts failures above
    the resolver. The httpx client is created lazily and reused.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        intents: Sequence[str] = (),
        api_key: Optional[str] = None,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.intents = tuple(intents)
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._client = client

    @classmethod
    def from_config(cls, config: LLMConfig, client: Optional[httpx.AsyncClient] = None) -> "ChatCompletionsClassifier":
        return cls(
            base_url=config.base_url,
            model=config.model,
            intents=config.intents,
            api_key=config.api_key(),
            client=client,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds, headers=self._headers())
        return self._client

    def build_messages(self, query: str, context: Optional[Context] = None) -> List[Dict[str, str]]:
        system = SYSTEM_PROMPT
        if self.intents:
            system += "Allowed intents: " + ", ".join(self.intents) + "."
        user = query
        if context:
            user = (
                "Conversation context (JSON):\n"
                + json.dumps(context, default=str, ensure_ascii=False)
                + "\n\nMessage to classify:\n"
                + query
            )
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]

    async def classify(self, query: str, context: Optional[Context] = None) -> Tuple[str, float]:
        body = {
            "model": self.model,
            "messages": self.build_messages(query, context),
            "temperature": 0,
        }
        url = f"{self.base_url}/chat/completions"
        try:
            response = await self._get_client().post(url, json=body, headers=self._headers())
        except httpx.TimeoutException as e:
            raise ServiceTimeout(f"language model call timed out: {url}") from e
        except httpx.RequestError as e:
            raise ServiceFailure(f"language model transport error: {e}") from e

        if response.status_code == 429:
            raise RateLimited(f"language model rate limited: {url}")
        if response.status_code >= 400:
            raise ServiceFailure(f"language model returned HTTP {response.status_code}")

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ServiceFailure("unexpected chat completion response shape") from e
        return parse_classification(str(content), self.intents)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
