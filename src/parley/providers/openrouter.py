"""OpenRouter chat-completions backend as a pydantic-ai model.

OpenRouter does not thread conversations server side, so every request carries
the full history: pydantic-ai messages are flattened into canonical items and
turned into wire messages by `openrouter_messages`. Streaming responses are
read as SSE `data:` lines until the `[DONE]` sentinel; text deltas are surfaced
as they arrive and the reasoning and tool-call fragments are reassembled into a
final `response_done` event.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict

import httpx
from pydantic_ai.messages import (
    ModelRequest,
    ModelResponse,
    SystemPromptPart,
    TextPart,
    ThinkingPart,
    ToolCallPart,
)
from pydantic_ai.models import (
    Model,
    ModelRequestParameters,
    StreamedResponse,
    check_allow_model_requests,
)
from pydantic_ai.usage import RequestUsage

from parley.config import OpenRouterSettings, openrouter_settings
from parley.log_utils import log_chunks_enabled, log_event
from parley.providers.openrouter_messages import (
    ChatRequest,
    build_messages_from_request,
    extract_function_tools,
    extract_model_settings,
)
from parley.providers.pydantic_runtime import messages_to_items

logger = logging.getLogger(__name__)

PROVIDER_ID = "openrouter"
DEFAULT_MODEL_ID = "openrouter/auto"
FALLBACK_TEXT = "No response from model."

_REASONING_DETAIL_FIELDS = {
    "reasoning.text": "text",
    "reasoning.summary": "summary",
    "reasoning.encrypted": "data",
}
_HTML_ENTITIES = (
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&amp;", "&"),
    ("&quot;", '"'),
    ("&#39;", "'"),
    ("&apos;", "'"),
)


class OpenRouterError(RuntimeError):
    """Non-2xx answer from OpenRouter; headers are kept for Retry-After handling."""

    def __init__(self, message: str, status: int, headers: Dict[str, str], body: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.headers = headers
        self.body = body


def decode_html_entities(text: str) -> str:
    for entity, char in _HTML_ENTITIES:
        text = text.replace(entity, char)
    return text


def normalize_usage(usage: Any) -> Dict[str, int]:
    usage = usage if isinstance(usage, dict) else {}
    return {
        "input_tokens": int(usage.get("prompt_tokens") or 0),
        "output_tokens": int(usage.get("completion_tokens") or 0),
        "total_tokens": int(usage.get("total_tokens") or 0),
    }


def _first_choice(payload: Any) -> Dict[str, Any]:
    choices = payload.get("choices") if isinstance(payload, dict) else None
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return {}


def _reasoning_items(details: Any) -> list[Dict[str, Any]]:
    items: list[Dict[str, Any]] = []
    if not isinstance(details, list):
        return items
    for detail in details:
        if not isinstance(detail, dict):
            continue
        index = detail.get("index") or 0
        item: Dict[str, Any] = {
            "type": "reasoning",
            "id": detail.get("id") or f"reasoning-{int(time.time() * 1000)}-{index}",
            "content": [],
            "providerData": detail,
        }
        text_field = {"reasoning.text": "text", "reasoning.summary": "summary"}.get(detail.get("type"))
        if text_field and detail.get(text_field):
            item["content"].append(
                {
                    "type": "input_text",
                    "text": detail[text_field],
                    "providerData": {"format": detail.get("format"), "index": detail.get("index")},
                }
            )
        items.append(item)
    return items


def _reasoning_extras(reasoning: str | None, details: Any) -> Dict[str, Any]:
    extras: Dict[str, Any] = {}
    if reasoning:
        extras["reasoning"] = reasoning
    if details is not None:
        extras["reasoning_details"] = details
    return extras


def _tool_name(name: Any) -> str:
    return str(name or "").strip()


@dataclass
class _StreamState:
    text: str = ""
    response_id: str | None = None
    usage: Dict[str, Any] | None = None
    reasoning_text: str = ""
    reasoning_details: list[Dict[str, Any]] = field(default_factory=list)
    tool_calls: list[Dict[str, Any] | None] = field(default_factory=list)

    def absorb(self, chunk: Dict[str, Any]) -> str | None:
        """Fold one SSE chunk into the state and return its content delta."""

        if chunk.get("id") and self.response_id is None:
            self.response_id = str(chunk["id"])
        if chunk.get("usage"):
            self.usage = chunk["usage"]

        delta = _first_choice(chunk).get("delta") or {}
        if not isinstance(delta, dict):
            return None
        self._merge_reasoning_details(delta.get("reasoning_details"))
        reasoning = delta.get("reasoning") or delta.get("reasoning_content")
        if isinstance(reasoning, str) and reasoning:
            self.reasoning_text += reasoning
        if delta.get("tool_calls"):
            self._merge_tool_calls(delta["tool_calls"])

        content = delta.get("content")
        if isinstance(content, str) and content:
            self.text += content
            return content
        return None

    def _merge_reasoning_details(self, details: Any) -> None:
        if not details:
            return
        existing = {f"{item.get('type')}:{item.get('index')}": item for item in self.reasoning_details}
        for detail in details if isinstance(details, list) else [details]:
            if not isinstance(detail, dict):
                continue
            field_name = _REASONING_DETAIL_FIELDS.get(detail.get("type"))
            if field_name is None:
                continue
            key = f"{detail.get('type')}:{detail.get('index')}"
            current = existing.get(key)
            if current is None:
                current = dict(detail)
                current[field_name] = detail.get(field_name) or ""
                self.reasoning_details.append(current)
                existing[key] = current
            else:
                current[field_name] = (current.get(field_name) or "") + (detail.get(field_name) or "")

    def _merge_tool_calls(self, deltas: Any) -> None:
        for delta in deltas if isinstance(deltas, list) else [deltas]:
            if not isinstance(delta, dict):
                continue
            index = delta.get("index")
            if not isinstance(index, int):
                index = len(self.tool_calls)
            while len(self.tool_calls) <= index:
                self.tool_calls.append(None)
            call = self.tool_calls[index] or {"type": "function_call", "callId": "", "name": "", "arguments": ""}
            if delta.get("id"):
                call["callId"] += str(delta["id"])
            function = delta.get("function") or {}
            if function.get("name"):
                call["name"] += str(function["name"])
            if function.get("arguments"):
                call["arguments"] += decode_html_entities(str(function["arguments"]))
            self.tool_calls[index] = call

    def output(self) -> list[Dict[str, Any]]:
        details = self.reasoning_details or None
        extras = _reasoning_extras(self.reasoning_text, details)
        output = _reasoning_items(details)
        if self.text:
            output.append(
                {
                    "type": "message",
                    "role": "assistant",
                    "status": "completed",
                    "content": [{"type": "output_text", "text": self.text}],
                    **extras,
                }
            )
        for call in self.tool_calls:
            if call is None:
                continue
            output.append(
                {
                    "type": "function_call",
                    "callId": call["callId"],
                    "name": _tool_name(call["name"]),
                    "arguments": call["arguments"],
                    "status": "completed",
                    **extras,
                }
            )
        return output


# pydantic-ai glue ---------------------------------------------------------------


def _system_instructions(messages: list[Any], params: ModelRequestParameters) -> str | None:
    chunks = [
        part.content
        for message in messages
        if isinstance(message, ModelRequest)
        for part in message.parts
        if isinstance(part, SystemPromptPart) and part.content
    ]
    instruction_parts = getattr(params, "instruction_parts", None)
    if instruction_parts:
        chunks.extend(part.content for part in instruction_parts if part.content)
    else:
        for message in reversed(messages):
            instructions = getattr(message, "instructions", None) if isinstance(message, ModelRequest) else None
            if instructions:
                chunks.append(instructions)
                break
    return "\n\n".join(chunks) or None


def _tool_definitions(params: ModelRequestParameters) -> list[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters_json_schema,
            "strict": tool.strict,
        }
        for tool in [*params.function_tools, *params.output_tools]
    ]


def _request_settings(model_settings: Any) -> Dict[str, Any]:
    settings = dict(model_settings or {})
    effort = settings.pop("openai_reasoning_effort", None)
    if effort and "reasoning_effort" not in settings:
        settings["reasoning_effort"] = effort
    return settings


def _response_parts(output: list[Dict[str, Any]]) -> list[Any]:
    """Turn OpenRouter output items into pydantic-ai response parts."""

    parts: list[Any] = []
    reasoning = ""
    for item in output:
        if item.get("type") == "reasoning":
            reasoning += "".join(str(chunk.get("text") or "") for chunk in item.get("content") or [])
        elif not reasoning and item.get("reasoning"):
            reasoning = str(item["reasoning"])
    if reasoning:
        parts.append(ThinkingPart(content=reasoning))

    for item in output:
        kind = item.get("type")
        if kind == "message":
            text = "".join(str(chunk.get("text") or "") for chunk in item.get("content") or [])
            if text:
                parts.append(TextPart(content=text))
        elif kind == "function_call":
            call: Dict[str, Any] = {"tool_name": item["name"], "args": item.get("arguments") or None}
            if item.get("callId"):
                call["tool_call_id"] = item["callId"]
            parts.append(ToolCallPart(**call))
    return parts


def _stream_events(result: Any) -> list[Any]:
    """Parts-manager handlers return a single event, None, or an iterator of events."""

    if result is None:
        return []
    if hasattr(result, "event_kind"):
        return [result]
    return list(result)


@dataclass
class OpenRouterStreamedResponse(StreamedResponse):
    """Feeds OpenRouter SSE chunks into pydantic-ai's parts manager."""

    _model_name: str
    _chunks: AsyncIterator[Dict[str, Any]]
    _provider_url: str | None = None
    _timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc), init=False)

    async def _get_event_iterator(self) -> AsyncIterator[Any]:
        async for event in self._chunks:
            if event.get("type") == "response_done":
                response = event.get("response") or {}
                self.provider_response_id = response.get("id")
                usage = response.get("usage") or {}
                self._usage = RequestUsage(
                    input_tokens=usage.get("input_tokens") or 0,
                    output_tokens=usage.get("output_tokens") or 0,
                )
                continue
            chunk = event.get("event")
            if event.get("type") != "model" or not isinstance(chunk, dict):
                continue
            delta = _first_choice(chunk).get("delta")
            if not isinstance(delta, dict):
                continue

            reasoning = delta.get("reasoning") or delta.get("reasoning_content")
            if isinstance(reasoning, str) and reasoning:
                for item in _stream_events(
                    self._parts_manager.handle_thinking_delta(vendor_part_id="reasoning", content=reasoning)
                ):
                    yield item
            content = delta.get("content")
            if isinstance(content, str) and content:
                for item in _stream_events(
                    self._parts_manager.handle_text_delta(vendor_part_id="content", content=content)
                ):
                    yield item
            for call in delta.get("tool_calls") or []:
                if not isinstance(call, dict):
                    continue
                function = call.get("function") or {}
                arguments = function.get("arguments")
                for item in _stream_events(
                    self._parts_manager.handle_tool_call_delta(
                        vendor_part_id=f"tool-{call.get('index', 0)}",
                        tool_name=_tool_name(function.get("name")) or None,
                        args=decode_html_entities(str(arguments)) if arguments else None,
                        tool_call_id=call.get("id") or None,
                    )
                ):
                    yield item

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def provider_name(self) -> str:
        return PROVIDER_ID

    @property
    def provider_url(self) -> str | None:
        return self._provider_url

    @property
    def timestamp(self) -> datetime:
        return self._timestamp


class OpenRouterModel(Model):
    """Chat-completions model backed by OpenRouter.

    `stream_response` and `get_response` speak OpenRouter's wire format
    directly; `request` and `request_stream` adapt them for a pydantic-ai
    `Agent`.
    """

    provider_id = PROVIDER_ID

    def __init__(
        self,
        model_id: str | None = None,
        *,
        connection: OpenRouterSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
        settings: Any | None = None,
    ) -> None:
        self.model_id = model_id or DEFAULT_MODEL_ID
        self._connection = connection
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))
        super().__init__(settings=settings)

    @property
    def model_name(self) -> str:
        return self.model_id

    @property
    def system(self) -> str:
        return PROVIDER_ID

    @property
    def connection(self) -> OpenRouterSettings:
        if self._connection is None:
            self._connection = openrouter_settings()
        return self._connection

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.connection.api_key}",
            "HTTP-Referer": self.connection.referrer,
            "X-Title": self.connection.title,
        }

    def _body(self, request: ChatRequest, *, stream: bool) -> Dict[str, Any]:
        messages = build_messages_from_request(request, self.model_id)
        tools = extract_function_tools(request)
        body: Dict[str, Any] = {"model": self.model_id, "messages": messages, "stream": stream}
        body.update(extract_model_settings(request.settings))
        body["tools"] = tools
        if tools:
            body["tool_choice"] = "auto"
        log_event(
            logger,
            "openrouter.request",
            level=logging.DEBUG,
            model=self.model_id,
            stream=stream,
            message_count=len(messages),
            tool_count=len(tools),
        )
        return body

    @property
    def url(self) -> str:
        return f"{self.connection.base_url}/chat/completions"

    async def _raise_for_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        try:
            body = (await response.aread()).decode("utf-8", errors="replace")
        except httpx.HTTPError:
            body = None
        headers = {key.lower(): value for key, value in response.headers.items()}
        message = f"OpenRouter request failed: {response.status_code} {response.reason_phrase}"
        if body:
            message = f"{message} - {body}"
        log_event(logger, "openrouter.request.failed", level=logging.WARNING, status=response.status_code)
        raise OpenRouterError(message, response.status_code, headers, body)

    async def get_response(self, request: ChatRequest) -> Dict[str, Any]:
        response = await self._client.post(self.url, json=self._body(request, stream=False), headers=self._headers())
        await self._raise_for_status(response)
        payload = response.json()
        message = _first_choice(payload).get("message") or {}

        content = message.get("content") or ""
        text = content if isinstance(content, str) else json.dumps(content)
        reasoning = message.get("reasoning") or message.get("reasoning_content")
        details = message.get("reasoning_details")
        tool_calls = [
            call for call in message.get("tool_calls") or [] if isinstance(call, dict) and call.get("type") == "function"
        ]
        extras = _reasoning_extras(reasoning if isinstance(reasoning, str) else None, details)

        output = _reasoning_items(details)
        if text or not tool_calls:
            output.append(
                {
                    "type": "message",
                    "role": "assistant",
                    "status": "completed",
                    "content": [{"type": "output_text", "text": text or FALLBACK_TEXT}],
                    **extras,
                }
            )
        for call in tool_calls:
            function = call.get("function") or {}
            output.append(
                {
                    "type": "function_call",
                    "callId": call.get("id"),
                    "name": _tool_name(function.get("name")),
                    "arguments": decode_html_entities(str(function.get("arguments") or "")),
                    "status": "completed",
                    **extras,
                }
            )
        return {
            "id": payload.get("id") or str(uuid.uuid4()),
            "usage": normalize_usage(payload.get("usage")),
            "output": output,
            "provider_data": payload,
        }

    async def stream_response(self, request: ChatRequest) -> AsyncIterator[Dict[str, Any]]:
        """Yield `output_text_delta`, raw `model` chunks and a final `response_done`."""

        state = _StreamState()
        async with self._client.stream(
            "POST",
            self.url,
            json=self._body(request, stream=True),
            headers={**self._headers(), "Accept": "text/event-stream"},
        ) as response:
            await self._raise_for_status(response)
            async for line in response.aiter_lines():
                line = line.strip()
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError as exc:
                    log_event(logger, "openrouter.stream.parse_error", level=logging.ERROR, error=str(exc))
                    continue
                if not isinstance(chunk, dict):
                    continue
                if log_chunks_enabled():
                    log_event(logger, "openrouter.stream.chunk", level=logging.DEBUG, chunk=chunk)
                delta = state.absorb(chunk)
                if delta:
                    yield {"type": "output_text_delta", "delta": delta}
                yield {"type": "model", "event": chunk}

        response_id = state.response_id or str(uuid.uuid4())
        log_event(
            logger,
            "openrouter.stream.done",
            level=logging.DEBUG,
            response_id=response_id,
            text_chars=len(state.text),
            tool_calls=sum(1 for call in state.tool_calls if call),
        )
        yield {
            "type": "response_done",
            "response": {
                "id": response_id,
                "usage": normalize_usage(state.usage),
                "output": state.output(),
            },
        }
        yield {"type": "model", "event": "[DONE]"}

    # pydantic-ai Model interface ------------------------------------------------

    def chat_request(
        self,
        messages: list[Any],
        model_settings: Any | None,
        model_request_parameters: ModelRequestParameters,
    ) -> ChatRequest:
        """Full-history request for `messages`, routed through the wire-message adapter."""

        return ChatRequest(
            input=messages_to_items(messages),
            system_instructions=_system_instructions(messages, model_request_parameters),
            tools=_tool_definitions(model_request_parameters),
            settings=_request_settings(model_settings),
        )

    async def request(
        self,
        messages: list[Any],
        model_settings: Any | None,
        model_request_parameters: ModelRequestParameters,
    ) -> ModelResponse:
        check_allow_model_requests()
        model_settings, model_request_parameters = self.prepare_request(model_settings, model_request_parameters)
        response = await self.get_response(self.chat_request(messages, model_settings, model_request_parameters))
        usage = response["usage"]
        return ModelResponse(
            parts=_response_parts(response["output"]),
            usage=RequestUsage(input_tokens=usage["input_tokens"], output_tokens=usage["output_tokens"]),
            model_name=self.model_id,
            provider_name=PROVIDER_ID,
            provider_response_id=response["id"],
        )

    @asynccontextmanager
    async def request_stream(
        self,
        messages: list[Any],
        model_settings: Any | None,
        model_request_parameters: ModelRequestParameters,
        run_context: Any | None = None,
    ) -> AsyncIterator[StreamedResponse]:
        check_allow_model_requests()
        model_settings, model_request_parameters = self.prepare_request(model_settings, model_request_parameters)
        chunks = self.stream_response(self.chat_request(messages, model_settings, model_request_parameters))
        try:
            yield OpenRouterStreamedResponse(
                model_request_parameters=model_request_parameters,
                _model_name=self.model_id,
                _chunks=chunks,
                _provider_url=self.connection.base_url,
            )
        finally:
            await chunks.aclose()


__all__ = [
    "DEFAULT_MODEL_ID",
    "FALLBACK_TEXT",
    "OpenRouterError",
    "OpenRouterModel",
    "OpenRouterStreamedResponse",
    "PROVIDER_ID",
    "decode_html_entities",
    "normalize_usage",
]
