"""Tests for the OpenAI-compatible language-model classifier."""

import json

import httpx
import pytest

from hybrid_intent.config import LLMConfig
from hybrid_intent.errors import RateLimited, ServiceFailure, ServiceTimeout
from hybrid_intent.llm import ChatCompletionsClassifier, parse_classification


def completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def make_classifier(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("intents", ["appointment_scheduling", "billing_question"])
    return ChatCompletionsClassifier(
        base_url="http://llm.test/v1/",
        model="test-model",
        client=client,
        **kwargs,
    )


# =============================================================================
# parse_classification
# =============================================================================


def test_parse_plain_json():
    assert parse_classification('{"intent": "a", "confidence": 0.8}') == ("a", 0.8)


def test_parse_tolerates_fences_and_prose():
    content = 'Sure!\n```json\n{"intent": "a", "confidence": 0.65}\n```'
    assert parse_classification(content) == ("a", 0.65)


def test_parse_clamps_confidence():
    assert parse_classification('{"intent": "a", "confidence": 7}') == ("a", 1.0)
    assert parse_classification('{"intent": "a", "confidence": -1}') == ("a", 0.0)


@pytest.mark.parametrize(
    "content",
    [
        "no json here",
        '{"intent": }',
        '{"confidence": 0.5}',
        '{"intent": "a", "confidence": "high"}',
    ],
)
def test_parse_failures(content):
    with pytest.raises(ServiceFailure):
        parse_classification(content)


def test_parse_rejects_unknown_intent():
    with pytest.raises(ServiceFailure, match="unknown intent"):
        parse_classification('{"intent": "z", "confidence": 0.5}', allowed=["a", "b"])


# =============================================================================
# HTTP
# =============================================================================


@pytest.mark.asyncio
async def test_classify_posts_chat_completion():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200, json=completion('{"intent": "billing_question", "confidence": 0.82}')
        )

    clf = make_classifier(handler, api_key="sk-test")
    label, confidence = await clf.classify("why was I charged twice", {"previous_decision": None})
    await clf.aclose()

    assert (label, confidence) == ("billing_question", 0.82)
    assert seen["url"] == "http://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["model"] == "test-model"
    assert seen["body"]["temperature"] == 0
    system, user = seen["body"]["messages"]
    assert "billing_question" in system["content"]
    assert "why was I charged twice" in user["content"]
    assert "previous_decision" in user["content"]


@pytest.mark.asyncio
async def test_rate_limited():
    clf = make_classifier(lambda request: httpx.Response(429))
    with pytest.raises(RateLimited):
        await clf.classify("hi")


@pytest.mark.asyncio
async def test_server_error_is_failure():
    clf = make_classifier(lambda request: httpx.Response(503, text="down"))
    with pytest.raises(ServiceFailure, match="503"):
        await clf.classify("hi")


@pytest.mark.asyncio
async def test_timeout_is_service_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    clf = make_classifier(handler)
    with pytest.raises(ServiceTimeout):
        await clf.classify("hi")


@pytest.mark.asyncio
async def test_transport_error_is_failure():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    clf = make_classifier(handler)
    with pytest.raises(ServiceFailure):
        await clf.classify("hi")


@pytest.mark.asyncio
async def test_unexpected_shape_is_failure():
    clf = make_classifier(lambda request: httpx.Response(200, json={"choices": []}))
    with pytest.raises(ServiceFailure, match="shape"):
        await clf.classify("hi")


@pytest.mark.asyncio
async def test_unknown_intent_is_failure():
    clf = make_classifier(
        lambda request: httpx.Response(200, json=completion('{"intent": "x", "confidence": 1}'))
    )
    with pytest.raises(ServiceFailure):
        await clf.classify("hi")


def test_from_config(monkeypatch):
    monkeypatch.setenv("TEST_LLM_KEY", "k")
    config = LLMConfig.from_dict(
        {
            "enabled": True,
            "base_url": "https://api.example.com/v1",
            "model": "m",
            "api_key_env": "TEST_LLM_KEY",
            "intents": ["a"],
        }
    )
    clf = ChatCompletionsClassifier.from_config(config)
    assert clf.base_url == "https://api.example.com/v1"
    assert clf.api_key == "k"
    assert clf.intents == ("a",)


def test_build_messages_without_context():
    clf = ChatCompletionsClassifier("http://x", "m")
    messages = clf.build_messages("hello")
    assert messages[1] == {"role": "user", "content": "hello"}
    assert "Allowed intents" not in messages[0]["content"]
