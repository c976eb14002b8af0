import asyncio
import json

import httpx
import pytest

from movie_chat.core.llm_client import LlmCallError, LlmClient, _extract_json
from movie_chat.core.metrics import metrics


def _client(handler, fallbacks=("http://fallback",)):
    return LlmClient(
        base_url="http://primary",
        fallback_urls=fallbacks,
        timeout_sec=1.0,
        enabled=True,
        transport=httpx.MockTransport(handler),
    )


def test_chat_completion_posts_generate_payload():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"content": "hello there"})

    result = asyncio.run(_client(handler).chat_completion([{"role": "user", "content": "hi"}], model="m1", trace_id="t1"))

    assert result == {"content": "hello there", "provider": "primary"}
    assert str(seen[0].url) == "http://primary/v1/generate"
    body = json.loads(seen[0].content)
    assert body["model"] == "m1"
    assert body["trace_id"] == "t1"
    assert body["messages"] == [{"role": "user", "content": "hi"}]
    assert seen[0].headers["x-trace-id"] == "t1"


def test_chat_completion_fails_over_on_5xx():
    calls = []

    def handler(request):
        calls.append(request.url.host)
        if request.url.host == "primary":
            return httpx.Response(503, json={"error": "busy"})
        return httpx.Response(200, json={"content": "from fallback"})

    result = asyncio.run(_client(handler).chat_completion([{"role": "user", "content": "hi"}]))

    assert calls == ["primary", "fallback"]
    assert result["provider"] == "fallback_1"
    assert metrics.snapshot()["chat_llm_failover_total{from=primary,reason=http_503,to=fallback_1}"] == 1


def test_chat_completion_fails_over_on_timeout():
    def handler(request):
        if request.url.host == "primary":
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, json={"content": "ok"})

    result = asyncio.run(_client(handler).chat_completion([{"role": "user", "content": "hi"}]))

    assert result["provider"] == "fallback_1"


def test_chat_completion_fails_over_on_protocol_error():
    def handler(request):
        if request.url.host == "primary":
            raise httpx.RemoteProtocolError("peer closed connection", request=request)
        return httpx.Response(200, json={"content": "ok"})

    result = asyncio.run(_client(handler).chat_completion([{"role": "user", "content": "hi"}]))

    assert result["provider"] == "fallback_1"
    assert metrics.snapshot()["chat_llm_route_total{provider=primary,result=error}"] == 1


def test_chat_completion_raises_llm_error_when_only_provider_drops():
    def handler(request):
        raise httpx.RemoteProtocolError("peer closed connection", request=request)

    with pytest.raises(LlmCallError) as exc_info:
        asyncio.run(_client(handler, fallbacks=()).chat_completion([{"role": "user", "content": "hi"}]))
    assert exc_info.value.code == "llm_unavailable"


def test_chat_completion_does_not_fail_over_on_client_error():
    calls = []

    def handler(request):
        calls.append(request.url.host)
        return httpx.Response(400, json={"error": "bad"})

    with pytest.raises(LlmCallError) as exc_info:
        asyncio.run(_client(handler).chat_completion([{"role": "user", "content": "hi"}]))

    assert exc_info.value.code == "llm_http_error"
    assert exc_info.value.status_code == 400
    assert calls == ["primary"]


def test_chat_completion_raises_when_last_provider_times_out():
    def handler(request):
        raise httpx.ConnectTimeout("down", request=request)

    with pytest.raises(LlmCallError) as exc_info:
        asyncio.run(_client(handler, fallbacks=()).chat_completion([{"role": "user", "content": "hi"}]))

    assert exc_info.value.code == "llm_timeout"


def test_chat_completion_rejects_missing_content():
    def handler(request):
        return httpx.Response(200, json={"text": "wrong field"})

    with pytest.raises(LlmCallError) as exc_info:
        asyncio.run(_client(handler).chat_completion([{"role": "user", "content": "hi"}]))

    assert exc_info.value.code == "llm_no_content"


def test_disabled_client_raises_without_network():
    def handler(request):
        raise AssertionError("must not be called")

    client = LlmClient(base_url="http://primary", enabled=False, transport=httpx.MockTransport(handler))

    with pytest.raises(LlmCallError) as exc_info:
        asyncio.run(client.chat_completion([{"role": "user", "content": "hi"}]))

    assert exc_info.value.code == "llm_disabled"


def test_analyze_message_parses_fenced_json_and_clamps_confidence():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        content = '```json\n{"intent": "recommendation", "confidence": 1.7, "language": "en", "keywords": ["horror", " ", "1999"]}\n```'
        return httpx.Response(200, json={"content": content})

    result = asyncio.run(
        _client(handler).analyze_message(
            "scary movie from 1999",
            {"last_intent": "greeting", "history": [{"role": "user", "text": "hello"}]},
        )
    )

    assert result == {"intent": "recommendation", "confidence": 1.0, "language": "en", "keywords": ["horror", "1999"]}
    body = seen[0]
    assert body["temperature"] == 0.0
    assert body["max_tokens"] == 200
    assert "previous intent: greeting" in body["messages"][1]["content"]
    assert body["messages"][-1] == {"role": "user", "content": "scary movie from 1999"}


def test_analyze_message_rejects_non_json_reply():
    def handler(request):
        return httpx.Response(200, json={"content": "I think it is a greeting."})

    with pytest.raises(LlmCallError):
        asyncio.run(_client(handler).analyze_message("hello"))


def test_extract_json_variants():
    assert _extract_json({"a": 1}) == {"a": 1}
    assert _extract_json('noise {"intent": "random"} trailing') == {"intent": "random"}
    assert _extract_json("no json here") is None
    assert _extract_json(None) is None
