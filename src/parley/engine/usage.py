"""Token usage normalization across provider payload shapes."""

from __future__ import annotations

import math
from typing import Any, Iterable

from parley.engine.normalizer import field_of

NormalizedUsage = dict[str, float]

_PROMPT_KEYS = (
    "prompt_tokens",
    "input_tokens",
    "input_token_count",
    "prompt_token_count",
    "promptTokenCount",
    "inputTokenCount",
    "inputTokens",
)
_COMPLETION_KEYS = (
    "completion_tokens",
    "output_tokens",
    "output_token_count",
    "completion_token_count",
    "candidatesTokenCount",
    "outputTokenCount",
    "outputTokens",
    "predicted_n",
)
_TOTAL_KEYS = ("total_tokens", "total_token_count", "totalTokenCount", "totalTokens")
_CACHE_CREATION_KEYS = ("cache_creation_input_tokens", "cacheCreationInputTokens")
_CACHE_READ_KEYS = ("cache_read_input_tokens", "cacheReadInputTokens")
_REASONING_KEYS = ("reasoning_tokens", "reasoning_token_count", "thoughtsTokenCount", "thoughts_token_count")
_PROMPT_MS_KEYS = ("prompt_ms", "promptMs")
_COMPLETION_MS_KEYS = ("completion_ms", "completionMs", "predicted_ms", "predictedMs", "output_ms", "outputMs")


def _as_number(value: Any) -> float | int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return None
        if not math.isfinite(number):
            return None
        return int(number) if number.is_integer() else number
    return None


def _coalesce(values: Iterable[Any]) -> float | int | None:
    for value in values:
        number = _as_number(value)
        if number is not None:
            return number
    return None


def _lookup(usage: Any, keys: Iterable[str]) -> float | int | None:
    return _coalesce(field_of(usage, key) for key in keys)


def _resolve(usage: Any) -> Any:
    """Providers sometimes expose usage as a method rather than a value."""

    if usage is None:
        return None
    if callable(usage):
        try:
            return usage()
        except TypeError:
            return None
    return usage


def normalize_usage(usage: Any) -> NormalizedUsage | None:
    """Map any known usage shape onto `prompt_tokens`/`completion_tokens`/... keys.

    Returns None when nothing numeric could be found.
    """

    usage = _resolve(usage)
    if usage is None or isinstance(usage, (str, int, float, bool, list, tuple)):
        return None

    prompt_n = _as_number(field_of(usage, "prompt_n"))
    llama_prompt = None
    if prompt_n is not None:
        llama_prompt = (_as_number(field_of(usage, "cache_n")) or 0) + prompt_n
    prompt = _coalesce([_lookup(usage, _PROMPT_KEYS), llama_prompt])
    completion = _lookup(usage, _COMPLETION_KEYS)

    total = _lookup(usage, _TOTAL_KEYS)
    if total is None:
        parts = [
            value
            for value in (
                prompt,
                completion,
                _lookup(usage, _CACHE_CREATION_KEYS),
                _lookup(usage, _CACHE_READ_KEYS),
            )
            if value is not None
        ]
        total = sum(parts) if parts else None

    reasoning = _coalesce(
        [
            _lookup(usage, _REASONING_KEYS),
            field_of(field_of(usage, "completion_tokens_details"), "reasoning_tokens"),
            field_of(field_of(usage, "output_tokens_details"), "reasoning_tokens"),
        ]
    )

    mapped: NormalizedUsage = {}
    for key, value in (
        ("prompt_tokens", prompt),
        ("completion_tokens", completion),
        ("total_tokens", total),
        ("reasoning_tokens", reasoning),
        ("prompt_ms", _lookup(usage, _PROMPT_MS_KEYS)),
        ("completion_ms", _lookup(usage, _COMPLETION_MS_KEYS)),
    ):
        if value is not None:
            mapped[key] = value
    return mapped or None


def extract_usage(payload: Any) -> NormalizedUsage | None:
    """Collect usage from the usual locations on an event or result object.

    Earlier locations win when the same key is reported more than once.
    """

    if payload is None or isinstance(payload, (str, bytes, int, float, bool)):
        return None

    metadata = field_of(payload, "usageMetadata") or field_of(payload, "usage_metadata")
    candidates = (
        field_of(payload, "usage"),
        metadata,
        field_of(field_of(payload, "response"), "usage"),
        field_of(payload, "timings"),
        payload,
    )
    found = [normalized for normalized in map(normalize_usage, candidates) if normalized]
    if not found:
        return None

    merged: NormalizedUsage = {}
    for normalized in reversed(found):
        merged.update(normalized)
    return normalize_usage(merged)


def extract_raw_responses_usage(stream: Any) -> NormalizedUsage | None:
    """Scan a trailing `raw_responses` list from last to first."""

    responses = field_of(stream, "raw_responses")
    if not isinstance(responses, (list, tuple)):
        return None
    for response in reversed(responses):
        usage = extract_usage(response)
        if usage:
            return usage
    return None


def extract_stream_usage(completed: Any, stream: Any) -> NormalizedUsage | None:
    """Usage once a stream has finished: completed result, stream, then raw responses."""

    return extract_usage(completed) or extract_usage(stream) or extract_raw_responses_usage(stream)


def _format_count(value: float | int) -> str:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return f"{value:,}"


def format_footer_usage(usage: NormalizedUsage | None) -> str:
    """Compact footer such as `Tok: 1,200 in / 80 out / 1,280 total`."""

    if not usage:
        return ""
    parts: list[str] = []
    for key, label in (("prompt_tokens", "in"), ("completion_tokens", "out"), ("total_tokens", "total")):
        value = usage.get(key)
        if value is not None:
            parts.append(f"{_format_count(value)} {label}")
    if not parts:
        return ""
    return "Tok: " + " / ".join(parts)


__all__ = [
    "NormalizedUsage",
    "extract_raw_responses_usage",
    "extract_stream_usage",
    "extract_usage",
    "format_footer_usage",
    "normalize_usage",
]
