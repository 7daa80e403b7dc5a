"""Pull text and reasoning deltas out of raw provider stream events.

Events arrive as dicts (SSE payloads, translated runtime events) or attribute
objects. Each concern is a short ordered chain of extractors; the first one that
returns a value wins, so supporting a new provider shape means adding a function
to the chain rather than growing a nested conditional.
"""

from __future__ import annotations

from typing import Any, Callable, Sequence

_TEXT_KEYS = ("delta", "output_text", "text", "content")
_NESTED_TEXT_KEYS = ("text", "value", "content", "delta")
_REASONING_SUMMARY_DELTA = "response.reasoning_summary_text.delta"
_REASONING_EVENT_TYPES = frozenset({_REASONING_SUMMARY_DELTA, "reasoning_delta"})

Extractor = Callable[[Any], "str | None"]


def field_of(obj: Any, name: str, default: Any = None) -> Any:
    """Read `name` from a mapping or an attribute object."""

    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def has_field(obj: Any, name: str) -> bool:
    if isinstance(obj, dict):
        return name in obj
    return obj is not None and hasattr(obj, name)


def coerce_to_text(value: Any) -> str:
    """Flatten scalars, part lists and nested part objects into plain text."""

    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return "".join(coerce_to_text(part) for part in value)
    for key in _NESTED_TEXT_KEYS:
        nested = field_of(value, key)
        if nested is not None:
            text = coerce_to_text(nested)
            if text:
                return text
    return ""


def _first(chain: Sequence[Extractor], event: Any) -> str | None:
    for extractor in chain:
        found = extractor(event)
        if found:
            return found
    return None


# Text ------------------------------------------------------------------------


def _text_from_payload(payload: Any) -> str | None:
    if payload is None:
        return None
    if isinstance(payload, str):
        return payload or None
    kind = field_of(payload, "type")
    if kind in _REASONING_EVENT_TYPES:
        return None
    marked = isinstance(kind, str) and "output_text" in kind
    if not marked and not any(has_field(payload, key) for key in _TEXT_KEYS):
        return None
    for key in _TEXT_KEYS:
        value = field_of(payload, key)
        if value is not None:
            return coerce_to_text(value) or None
    return None


def _text_from_envelope(event: Any) -> str | None:
    if isinstance(event, str):
        return None
    return _text_from_payload(field_of(event, "data"))


TEXT_EXTRACTORS: tuple[Extractor, ...] = (_text_from_payload, _text_from_envelope)


def extract_text_delta(event: Any) -> str | None:
    """Return the visible text carried by one stream event, if any."""

    return _first(TEXT_EXTRACTORS, event)


# Reasoning -------------------------------------------------------------------


def _model_envelope(event: Any) -> Any:
    """Return the `{type: "model", event: ...}` envelope, top level or under `data`."""

    if isinstance(event, str):
        return None
    if field_of(event, "type") == "model":
        return event
    data = field_of(event, "data")
    if field_of(data, "type") == "model":
        return data
    return None


def _reasoning_from_summary_event(event: Any) -> str | None:
    envelope = _model_envelope(event)
    inner = field_of(envelope, "event")
    if field_of(inner, "type") != _REASONING_SUMMARY_DELTA:
        return None
    return coerce_to_text(field_of(inner, "delta")) or None


def _first_choice(choices: Any) -> Any:
    if isinstance(choices, (list, tuple)):
        return choices[0] if choices else None
    if isinstance(choices, dict):
        if "0" in choices:
            return choices["0"]
        for key in choices:
            return choices[key]
    return None


def _reasoning_from_choice_delta(event: Any) -> str | None:
    envelope = _model_envelope(event)
    inner = field_of(envelope, "event")
    choice = _first_choice(field_of(inner, "choices"))
    delta = field_of(choice, "delta")
    if delta is None:
        return None
    for key in ("reasoning", "reasoning_content"):
        value = field_of(delta, key)
        if value:
            return coerce_to_text(value) or None
    return None


def _reasoning_from_dedicated_event(event: Any) -> str | None:
    if isinstance(event, str):
        return None
    if field_of(event, "type") not in _REASONING_EVENT_TYPES:
        return None
    return coerce_to_text(field_of(event, "delta")) or None


REASONING_EXTRACTORS: tuple[Extractor, ...] = (
    _reasoning_from_summary_event,
    _reasoning_from_choice_delta,
    _reasoning_from_dedicated_event,
)


def extract_reasoning_delta(event: Any) -> str | None:
    """Return the reasoning text carried by one stream event, if any.

    Deltas made only of whitespace are dropped.
    """

    found = _first(REASONING_EXTRACTORS, event)
    if found is None or not found.strip():
        return None
    return found


__all__ = [
    "REASONING_EXTRACTORS",
    "TEXT_EXTRACTORS",
    "coerce_to_text",
    "extract_reasoning_delta",
    "extract_text_delta",
    "field_of",
    "has_field",
]
