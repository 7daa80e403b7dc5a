"""Canonical local conversation history.

Providers without server-side threading need the whole transcript on every
request, so the session keeps its own copy and reconciles it with the history
each finished run reports.
"""

from __future__ import annotations

import copy
from typing import Any

from parley.engine.normalizer import field_of
from parley.engine.tool_args import raw_item_of

HistoryItem = dict[str, Any]

OVERLAP_WINDOW = 50


def _content_text(content: Any, *, part_types: set[str] | None = None) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part["text"]
            for part in content
            if isinstance(part, dict)
            and isinstance(part.get("text"), str)
            and (part_types is None or part.get("type") in part_types)
        )
    return ""


def item_signature(item: Any) -> str:
    """Identity used to line up local and incoming history items."""

    raw = raw_item_of(item)
    item_id = field_of(raw, "id")
    if isinstance(item_id, str) and item_id:
        return f"id:{item_id}"

    call_id = field_of(raw, "callId") or field_of(raw, "call_id") or field_of(raw, "tool_call_id")
    kind = field_of(raw, "type")
    kind = kind if isinstance(kind, str) else ""
    if isinstance(call_id, str) and call_id:
        return f"call:{call_id}:{kind}"

    role = field_of(raw, "role")
    if isinstance(role, str) and role:
        return f"msg:{role}:{kind}:{_content_text(field_of(raw, 'content'))}"

    name = field_of(raw, "name")
    return f"item:{kind}:{name if isinstance(name, str) else ''}"


def _is_assistant_message(raw: Any) -> bool:
    return field_of(raw, "role") == "assistant" and field_of(raw, "type") == "message"


def _prefer_incoming(existing: Any, incoming: Any) -> Any:
    """Keep the richer of two items that share a signature."""

    existing_raw = raw_item_of(existing)
    incoming_raw = raw_item_of(incoming)
    if not (_is_assistant_message(existing_raw) and _is_assistant_message(incoming_raw)):
        return existing
    for key in ("reasoning_details", "reasoning", "tool_calls"):
        mine = field_of(existing, key, field_of(existing_raw, key))
        theirs = field_of(incoming, key, field_of(incoming_raw, key))
        if mine is None and theirs is not None:
            return incoming
    return existing


class ConversationStore:
    """Ordered user/assistant/tool/reasoning items for one conversation."""

    def __init__(self) -> None:
        self._history: list[Any] = []

    def __len__(self) -> int:
        return len(self._history)

    def add_user_message(self, text: str | None) -> None:
        self._history.append({"role": "user", "type": "message", "content": text or ""})

    def add_shell_context(self, text: str) -> None:
        """Record shell output the user ran outside the model so it sees it next turn."""

        if not text:
            return
        self._history.append(
            {
                "role": "user",
                "type": "message",
                "content": f"Shell command executed by the user:\n{text}",
                "source": "shell_context",
            }
        )

    def update_from_result(self, result: Any) -> None:
        incoming = field_of(result, "history")
        if not isinstance(incoming, list) or not incoming:
            return
        fresh = copy.deepcopy(incoming)

        if not self._history:
            self._history = fresh
            return

        if len(fresh) >= len(self._history) and self._is_prefix(self._history, fresh):
            self._history = fresh
            return

        overlap = self._overlap(self._history, fresh)
        if overlap:
            merged = copy.deepcopy(self._history)
            start = len(merged) - overlap
            for offset in range(overlap):
                merged[start + offset] = _prefer_incoming(merged[start + offset], fresh[offset])
            self._history = merged + fresh[overlap:]
            return

        self._history.extend(fresh)

    def get_history(self) -> list[Any]:
        return copy.deepcopy(self._history)

    def get_last_user_message(self) -> str:
        for item in reversed(self._history):
            raw = raw_item_of(item)
            if field_of(raw, "role") != "user":
                continue
            return _content_text(field_of(raw, "content"), part_types={"input_text", "output_text"})
        return ""

    def remove_last_user_message(self) -> bool:
        for index in range(len(self._history) - 1, -1, -1):
            if field_of(raw_item_of(self._history[index]), "role") == "user":
                del self._history[index]
                return True
        return False

    def clear(self) -> None:
        self._history = []

    @staticmethod
    def _is_prefix(prefix: list[Any], full: list[Any]) -> bool:
        if len(prefix) > len(full):
            return False
        return all(item_signature(a) == item_signature(b) for a, b in zip(prefix, full))

    @staticmethod
    def _overlap(existing: list[Any], incoming: list[Any]) -> int:
        """Largest k where the last k existing items match the first k incoming ones."""

        for size in range(min(len(existing), len(incoming), OVERLAP_WINDOW), 0, -1):
            tail = existing[len(existing) - size :]
            if all(item_signature(a) == item_signature(b) for a, b in zip(tail, incoming[:size])):
                return size
        return 0


__all__ = ["ConversationStore", "HistoryItem", "OVERLAP_WINDOW", "item_signature"]
