"""Build OpenRouter chat-completions payloads from canonical history.

OpenRouter has no server-side conversation threading, so every request carries
the whole transcript. Canonical items are converted into `{role, content, ...}`
wire messages, same-role neighbours are merged, standalone reasoning blocks are
re-attached to the next assistant message, and for Anthropic-family models the
system prompt plus the latest user and tool messages get a prompt-cache marker.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from parley.engine.normalizer import field_of
from parley.engine.tool_args import raw_item_of
from parley.log_utils import log_event

logger = logging.getLogger(__name__)

CACHE_CONTROL = {"type": "ephemeral"}
TOOL_RESULT_TYPES = frozenset({"function_call_output", "function_call_result", "function_call_output_result"})

WireMessage = dict[str, Any]


@dataclass
class ChatRequest:
    """Provider-neutral request handed to the OpenRouter client."""

    input: str | list[Any]
    system_instructions: str | None = None
    tools: list[Any] = field(default_factory=list)
    settings: dict[str, Any] = field(default_factory=dict)


def is_anthropic_model(model_id: str | None) -> bool:
    lowered = (model_id or "").lower()
    return "anthropic" in lowered or "claude" in lowered


def _text_parts(content: Any, part_types: set[str]) -> str:
    if not isinstance(content, list):
        return ""
    return "".join(
        str(part.get("text"))
        for part in content
        if isinstance(part, dict) and part.get("type") in part_types and part.get("text")
    )


def _reasoning_fields(item: Any, raw: Any) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key in ("reasoning", "reasoning_content"):
        value = field_of(raw, key, field_of(item, key))
        if isinstance(value, str):
            fields[key] = value
    details = field_of(raw, "reasoning_details", field_of(item, "reasoning_details"))
    if details is not None:
        fields["reasoning_details"] = details
    return fields


def convert_item_to_message(item: Any) -> WireMessage | None:
    """Convert one canonical history item, or return None for unknown kinds."""

    if item is None:
        return None
    raw = raw_item_of(item)
    kind = field_of(raw, "type")
    role = field_of(raw, "role")

    if kind == "input_text" and isinstance(field_of(raw, "text"), str):
        return {"role": "user", "content": field_of(raw, "text")}

    if role == "assistant" and kind == "message":
        message: WireMessage = {"role": "assistant"}
        content = field_of(raw, "content")
        text = content if isinstance(content, str) else _text_parts(content, {"output_text"})
        if text:
            message["content"] = text
        message.update(_reasoning_fields(item, raw))
        tool_calls = field_of(raw, "tool_calls", field_of(item, "tool_calls"))
        if tool_calls is not None:
            message["tool_calls"] = tool_calls
        return message

    if role == "user" and kind == "message":
        content = field_of(raw, "content")
        if isinstance(content, str):
            return {"role": "user", "content": content}
        text = _text_parts(content, {"input_text", "output_text"})
        return {"role": "user", "content": text} if text else None

    if kind == "function_call":
        arguments = field_of(raw, "arguments")
        if arguments is None:
            args = field_of(raw, "args")
            arguments = json.dumps(args) if args else ""
        return {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {
                    "id": field_of(raw, "callId") or field_of(raw, "call_id") or field_of(raw, "id"),
                    "type": "function",
                    "function": {"name": field_of(raw, "name"), "arguments": arguments},
                }
            ],
            **_reasoning_fields(item, raw),
        }

    if kind in TOOL_RESULT_TYPES:
        output = field_of(raw, "output")
        if isinstance(output, str):
            content = output
        elif output is not None:
            content = json.dumps(output)
        else:
            content = ""
        return {
            "role": "tool",
            "tool_call_id": field_of(raw, "callId") or field_of(raw, "call_id") or field_of(raw, "id"),
            "content": content,
        }

    return None


def _join_text(existing: Any, incoming: Any) -> Any:
    if incoming is None:
        return existing
    if existing is None:
        return incoming
    return f"{existing}\n{incoming}"


def _merge_into(last: WireMessage, converted: WireMessage) -> None:
    last["content"] = _join_text(last.get("content"), converted.get("content"))
    if converted["role"] != "assistant":
        return
    if converted.get("tool_calls"):
        last["tool_calls"] = list(last.get("tool_calls") or []) + list(converted["tool_calls"])
    for key in ("reasoning", "reasoning_content"):
        if converted.get(key) is not None:
            last[key] = (last.get(key) or "") + converted[key]
    details = converted.get("reasoning_details")
    if details:
        if not isinstance(last.get("reasoning_details"), list):
            last["reasoning_details"] = [] if last.get("reasoning_details") is None else [last["reasoning_details"]]
        last["reasoning_details"].extend(details if isinstance(details, list) else [details])


def _mark_last(messages: list[WireMessage], role: str) -> None:
    for message in reversed(messages):
        if message.get("role") != role:
            continue
        content = message.get("content")
        if isinstance(content, str):
            message["content"] = [{"type": "text", "text": content, "cache_control": dict(CACHE_CONTROL)}]
        elif isinstance(content, list):
            for part in reversed(content):
                if isinstance(part, dict) and part.get("type") == "text":
                    part["cache_control"] = dict(CACHE_CONTROL)
                    break
        return


def _strip_cache_markers(messages: list[WireMessage]) -> None:
    for message in messages:
        if message.get("role") == "system":
            continue
        content = message.get("content")
        if isinstance(content, list):
            for part in content:
                if isinstance(part, dict):
                    part.pop("cache_control", None)


def apply_cache_hints(messages: list[WireMessage]) -> list[WireMessage]:
    """Mark the latest user and tool messages as prompt-cache boundaries.

    Markers left by an earlier call are removed first, so applying this to the
    same list again still leaves one marker per role.
    """

    _strip_cache_markers(messages)
    _mark_last(messages, "user")
    _mark_last(messages, "tool")
    return messages


def build_wire_messages(
    history: str | list[Any],
    model_id: str | None = None,
    system_instructions: str | None = None,
) -> list[WireMessage]:
    """Convert canonical history into the ordered OpenRouter message list."""

    anthropic = is_anthropic_model(model_id)
    messages: list[WireMessage] = []

    if system_instructions and system_instructions.strip():
        if anthropic:
            messages.append(
                {
                    "role": "system",
                    "content": [{"type": "text", "text": system_instructions, "cache_control": dict(CACHE_CONTROL)}],
                }
            )
        else:
            messages.append({"role": "system", "content": system_instructions})

    if isinstance(history, str):
        messages.append({"role": "user", "content": history})
    else:
        pending_details: list[Any] = []
        for item in history or []:
            raw = raw_item_of(item)
            if field_of(raw, "type") == "reasoning":
                detail = field_of(raw, "providerData", field_of(item, "providerData"))
                if isinstance(detail, dict):
                    pending_details.append(detail)
                continue

            converted = convert_item_to_message(item)
            if converted is None:
                log_event(
                    logger,
                    "openrouter.history.item_skipped",
                    level=logging.DEBUG,
                    item_type=field_of(raw, "type"),
                    role=field_of(raw, "role"),
                )
                continue
            if pending_details and converted["role"] == "assistant" and converted.get("reasoning_details") is None:
                converted["reasoning_details"] = pending_details
                pending_details = []

            last = messages[-1] if messages else None
            if last is not None and last["role"] == converted["role"] and converted["role"] in {"assistant", "user"}:
                _merge_into(last, converted)
                continue
            messages.append(converted)

    if anthropic:
        apply_cache_hints(messages)
    return messages


def build_messages_from_request(request: ChatRequest, model_id: str | None = None) -> list[WireMessage]:
    return build_wire_messages(request.input, model_id, request.system_instructions)


def extract_function_tools(request: ChatRequest) -> list[dict[str, Any]]:
    tools: list[dict[str, Any]] = []
    for tool in request.tools or []:
        if field_of(tool, "type", "function") != "function":
            continue
        tools.append(
            {
                "type": "function",
                "function": {
                    "name": field_of(tool, "name"),
                    "description": field_of(tool, "description"),
                    "parameters": field_of(tool, "parameters"),
                    "strict": field_of(tool, "strict"),
                },
            }
        )
    return tools


_SETTING_KEYS = (
    ("temperature", ("temperature",)),
    ("top_p", ("top_p", "topP")),
    ("max_tokens", ("max_tokens", "maxTokens")),
    ("top_k", ("top_k", "topK")),
    ("frequency_penalty", ("frequency_penalty", "frequencyPenalty")),
    ("presence_penalty", ("presence_penalty", "presencePenalty")),
)


def extract_model_settings(settings: Any) -> dict[str, Any]:
    """Map session model settings onto OpenRouter request body fields."""

    body: dict[str, Any] = {}
    if not settings:
        return body
    for target, aliases in _SETTING_KEYS:
        for alias in aliases:
            value = field_of(settings, alias)
            if value is not None:
                body[target] = value
                break

    reasoning = field_of(settings, "reasoning")
    if isinstance(reasoning, dict):
        body["reasoning"] = dict(reasoning)

    effort = field_of(settings, "reasoning_effort") or field_of(settings, "reasoningEffort")
    if effort is None and isinstance(reasoning, dict):
        effort = reasoning.get("effort")
    if effort == "default":
        effort = "medium"
    if effort and effort != "none":
        body["reasoning"] = {**body.get("reasoning", {}), "effort": effort}
    return body


__all__ = [
    "CACHE_CONTROL",
    "ChatRequest",
    "WireMessage",
    "apply_cache_hints",
    "build_messages_from_request",
    "build_wire_messages",
    "convert_item_to_message",
    "extract_function_tools",
    "extract_model_settings",
    "is_anthropic_model",
]
