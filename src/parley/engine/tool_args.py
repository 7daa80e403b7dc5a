"""Tool call argument parsing, caching and malformed-argument reporting."""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Iterable, MutableMapping

from parley.engine.normalizer import field_of
from parley.log_utils import log_event

logger = logging.getLogger(__name__)

_CALL_ID_KEYS = ("callId", "call_id", "tool_call_id", "toolCallId", "id")

INVALID_TOOL_CALL_FORMAT = "INVALID_TOOL_CALL_FORMAT"


def raw_item_of(item: Any) -> Any:
    raw = field_of(item, "rawItem")
    if raw is None:
        raw = field_of(item, "raw_item")
    return item if raw is None else raw


def call_id_of(item: Any) -> str | None:
    """Find a tool call id on the raw item first, then on the wrapper item."""

    for source in (raw_item_of(item), item):
        for key in _CALL_ID_KEYS:
            value = field_of(source, key)
            if value:
                return str(value)
    return None


def arguments_of(item: Any) -> Any:
    raw = raw_item_of(item)
    for source, key in ((raw, "arguments"), (raw, "args"), (item, "arguments"), (item, "args")):
        value = field_of(source, key)
        if value:
            return value
    return None


def parse_json_arguments(raw: Any) -> tuple[Any, str | None]:
    """Return `(value, error)` where strings are JSON-decoded when possible.

    Non-string values are passed through. On a decode failure the raw string is
    returned with the decoder message as the error.
    """

    if not isinstance(raw, str):
        return raw, None
    text = raw.strip()
    if not text:
        return None, None
    try:
        return json.loads(text), None
    except json.JSONDecodeError as exc:
        return raw, f"{exc.msg} at line {exc.lineno} column {exc.colno}"


def normalize_tool_arguments(raw: Any) -> Any:
    """Decode JSON string arguments, keeping opaque strings as they are."""

    if not raw:
        return None
    value, _ = parse_json_arguments(raw)
    return value


def coerce_tool_args(raw_args: Any) -> dict[str, Any]:
    """Convert tool call args to a dict, handling common non-dict shapes."""

    if raw_args is None:
        return {}
    if isinstance(raw_args, dict):
        return dict(raw_args)
    if isinstance(raw_args, str):
        value = normalize_tool_arguments(raw_args)
        if isinstance(value, dict):
            return value
        return {"command": raw_args}
    dump = getattr(raw_args, "model_dump", None)
    if callable(dump):
        data = dump()
        if isinstance(data, dict):
            return dict(data)
    return {}


def capture_tool_call_arguments(item: Any, cache: MutableMapping[str, Any]) -> None:
    """Remember the arguments of a `function_call` item under its call id."""

    raw = raw_item_of(item)
    if field_of(raw, "type") != "function_call":
        return
    call_id = None
    for key in _CALL_ID_KEYS:
        value = field_of(raw, key)
        if value:
            call_id = str(value)
            break
    if not call_id:
        return
    args = arguments_of(item)
    if args:
        cache[call_id] = args


def attach_cached_arguments(items: Iterable[Any], cache: MutableMapping[str, Any]) -> None:
    """Fill in missing `arguments` on result items from the call-id cache."""

    for item in items:
        if item is None or arguments_of(item):
            continue
        call_id = call_id_of(item)
        if not call_id:
            continue
        args = cache.get(call_id)
        if not args:
            continue
        if isinstance(item, dict):
            item["arguments"] = args
        else:
            try:
                setattr(item, "arguments", args)
            except AttributeError:
                log_event(logger, "tool_call.args.attach_skipped", level=logging.DEBUG, call_id=call_id)


class ArgumentDiagnostics:
    """Report malformed tool arguments at most once per call id."""

    def __init__(self) -> None:
        self._reported: set[str] = set()

    def report(self, call_id: str | None, tool_name: str, raw: Any, error: str) -> bool:
        key = call_id or f"{tool_name}:{raw!r}"
        if key in self._reported:
            return False
        self._reported.add(key)
        preview = raw if isinstance(raw, str) else repr(raw)
        log_event(
            logger,
            "tool_call.parse_failed",
            level=logging.ERROR,
            error_code=INVALID_TOOL_CALL_FORMAT,
            trace_id=uuid.uuid4().hex,
            call_id=call_id,
            tool_name=tool_name,
            raw_arguments=preview[:500],
            validation_errors=[error],
        )
        return True

    def reported(self, call_id: str) -> bool:
        return call_id in self._reported

    def clear(self) -> None:
        self._reported.clear()


__all__ = [
    "ArgumentDiagnostics",
    "INVALID_TOOL_CALL_FORMAT",
    "arguments_of",
    "attach_cached_arguments",
    "call_id_of",
    "capture_tool_call_arguments",
    "coerce_tool_args",
    "normalize_tool_arguments",
    "parse_json_arguments",
    "raw_item_of",
]
