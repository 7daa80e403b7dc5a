from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from parley.config import ConfigError, OpenRouterSettings
from parley.engine.normalizer import extract_reasoning_delta, extract_text_delta
from parley.providers.openrouter import (
    FALLBACK_TEXT,
    OpenRouterError,
    OpenRouterModel,
    decode_html_entities,
)
from parley.providers.openrouter_messages import ChatRequest

SETTINGS = OpenRouterSettings(api_key="sk-test", base_url="https://openrouter.test/api/v1")


def _sse(chunks: list[Any]) -> str:
    lines = [": keep-alive"]
    for chunk in chunks:
        lines.append(f"data: {chunk if isinstance(chunk, str) else json.dumps(chunk)}")
        lines.append("")
    lines.append("data: [DONE]")
    return "\n".join(lines) + "\n"


def _model(handler, captured: list[httpx.Request] | None = None, model_id: str = "openai/gpt-4.1") -> OpenRouterModel:
    def _wrapped(request: httpx.Request) -> httpx.Response:
        if captured is not None:
            captured.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(_wrapped))
    return OpenRouterModel(model_id, connection=SETTINGS, http_client=client)


async def _drain(model: OpenRouterModel, request: ChatRequest) -> list[dict]:
    return [event async for event in model.stream_response(request)]


@pytest.mark.asyncio
async def test_stream_surfaces_text_reasoning_and_final_response() -> None:
    chunks = [
        {"id": "gen-1", "choices": [{"delta": {"reasoning": "think"}}]},
        {"id": "gen-1", "choices": [{"delta": {"reasoning": "ing"}}]},
        "{not json",
        {"id": "gen-1", "choices": [{"delta": {"content": "Hi"}}]},
        {"id": "gen-1", "choices": [{"delta": {}}], "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}},
    ]
    captured: list[httpx.Request] = []
    model = _model(lambda request: httpx.Response(200, text=_sse(chunks)), captured)

    events = await _drain(model, ChatRequest(input="hello"))

    assert [extract_reasoning_delta(e) for e in events if extract_reasoning_delta(e)] == ["think", "ing"]
    assert [extract_text_delta(e) for e in events if extract_text_delta(e)] == ["Hi"]
    done = next(e for e in events if e["type"] == "response_done")["response"]
    assert done["id"] == "gen-1"
    assert done["usage"] == {"input_tokens": 5, "output_tokens": 2, "total_tokens": 7}
    [message] = done["output"]
    assert message["content"] == [{"type": "output_text", "text": "Hi"}]
    assert message["reasoning"] == "thinking"
    assert events[-1] == {"type": "model", "event": "[DONE]"}

    body = json.loads(captured[0].content)
    assert body["stream"] is True
    assert body["model"] == "openai/gpt-4.1"
    assert body["messages"] == [{"role": "user", "content": "hello"}]
    assert body["tools"] == []
    assert "tool_choice" not in body
    assert captured[0].headers["Authorization"] == "Bearer sk-test"
    assert captured[0].url == "https://openrouter.test/api/v1/chat/completions"


@pytest.mark.asyncio
async def test_stream_reassembles_tool_calls() -> None:
    chunks = [
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "call_a", "function": {"name": "shell", "arguments": '{"command":'}}]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": '"a &amp;&amp; b"}'}}]}}]},
    ]
    captured: list[httpx.Request] = []
    model = _model(lambda request: httpx.Response(200, text=_sse(chunks)), captured)
    request = ChatRequest(
        input="go",
        tools=[{"type": "function", "name": "shell", "parameters": {"type": "object"}}],
        settings={"temperature": 0.1},
    )

    events = await _drain(model, request)

    done = next(e for e in events if e["type"] == "response_done")["response"]
    [call] = done["output"]
    assert call["type"] == "function_call"
    assert call["callId"] == "call_a"
    assert call["name"] == "shell"
    assert json.loads(call["arguments"]) == {"command": "a && b"}
    body = json.loads(captured[0].content)
    assert body["tool_choice"] == "auto"
    assert body["temperature"] == 0.1


@pytest.mark.asyncio
async def test_stream_merges_reasoning_details_by_index() -> None:
    chunks = [
        {"choices": [{"delta": {"reasoning_details": [{"type": "reasoning.text", "index": 0, "text": "a"}]}}]},
        {"choices": [{"delta": {"reasoning_details": [{"type": "reasoning.text", "index": 0, "text": "b"}]}}]},
        {"choices": [{"delta": {"content": "ok"}}]},
    ]
    model = _model(lambda request: httpx.Response(200, text=_sse(chunks)))

    events = await _drain(model, ChatRequest(input="x"))

    output = next(e for e in events if e["type"] == "response_done")["response"]["output"]
    assert output[0]["type"] == "reasoning"
    assert output[0]["content"][0]["text"] == "ab"
    assert output[1]["reasoning_details"] == [{"type": "reasoning.text", "index": 0, "text": "ab"}]


@pytest.mark.asyncio
async def test_error_status_raises_with_headers() -> None:
    model = _model(lambda request: httpx.Response(429, text="slow down", headers={"Retry-After": "3"}))

    with pytest.raises(OpenRouterError) as info:
        await _drain(model, ChatRequest(input="x"))

    assert info.value.status == 429
    assert info.value.headers["retry-after"] == "3"
    assert info.value.body == "slow down"
    assert "429" in str(info.value)


@pytest.mark.asyncio
async def test_get_response_returns_tool_calls_without_placeholder_text() -> None:
    payload = {
        "id": "gen-2",
        "choices": [
            {
                "message": {
                    "content": "",
                    "tool_calls": [{"id": "call_b", "type": "function", "function": {"name": "grep", "arguments": "{}"}}],
                }
            }
        ],
        "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
    }
    model = _model(lambda request: httpx.Response(200, json=payload))

    response = await model.get_response(ChatRequest(input="x"))

    assert response["id"] == "gen-2"
    assert [item["type"] for item in response["output"]] == ["function_call"]
    assert response["usage"]["total_tokens"] == 2


@pytest.mark.asyncio
async def test_get_response_empty_message_uses_fallback_text() -> None:
    model = _model(lambda request: httpx.Response(200, json={"choices": [{"message": {"content": None}}]}))

    response = await model.get_response(ChatRequest(input="x"))

    assert response["output"][0]["content"][0]["text"] == FALLBACK_TEXT
    assert response["id"]


def test_missing_api_key_is_a_config_error() -> None:
    model = OpenRouterModel(http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))))

    with pytest.raises(ConfigError, match="OPENROUTER_API_KEY"):
        _ = model.connection


def test_decode_html_entities() -> None:
    assert decode_html_entities("a &lt;b&gt; &amp;&amp; &quot;c&quot; &#39;d&apos;") == "a <b> && \"c\" 'd'"
