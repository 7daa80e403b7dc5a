"""Structural contract of the execution runtime a session drives."""

from __future__ import annotations

import re
from typing import Any, AsyncIterator, Protocol, Sequence, runtime_checkable

from pydantic_ai.exceptions import UnexpectedModelBehavior

from parley.engine.approval import RemoveInterceptor, ToolInterceptor

MAX_HALLUCINATION_RETRIES = 2

_TOOL_NOT_FOUND = re.compile(r"Tool (\S+) not found")
_UNKNOWN_TOOL = re.compile(r"Unknown tool name: '?([^'\s.]+)'?")


@runtime_checkable
class RunStream(Protocol):
    """One streamed run.

    Iterating yields raw provider events. After iteration, `wait_completed()`
    resolves to the final result (or None) and the attributes below describe
    how the run ended.
    """

    last_response_id: str | None
    interruptions: Sequence[Any]
    state: Any
    new_items: Sequence[Any]
    history: Sequence[Any]
    final_output: Any

    def __aiter__(self) -> AsyncIterator[Any]: ...

    async def wait_completed(self) -> Any: ...


class ExecutionRuntime(Protocol):
    """The agent runtime: model calls, tool dispatch and approval pauses."""

    async def start_stream(self, input: str | list[Any], *, previous_response_id: str | None = None) -> RunStream: ...

    async def continue_run_stream(self, state: Any, *, previous_response_id: str | None = None) -> RunStream: ...


@runtime_checkable
class SupportsInterceptors(Protocol):
    def add_tool_interceptor(self, interceptor: ToolInterceptor) -> RemoveInterceptor: ...


def _messages(exc: BaseException) -> list[str]:
    """Messages of `exc` and its explicit causes.

    pydantic-ai reports an exhausted unknown-tool retry as a generic
    UnexpectedModelBehavior raised from the original ModelRetry.
    """

    found: list[str] = []
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        found.append(str(getattr(current, "message", None) or current))
        current = current.__cause__
    return found


def is_hallucinated_tool_error(exc: BaseException) -> bool:
    """True when the model asked for a tool that is not registered."""

    if not isinstance(exc, UnexpectedModelBehavior):
        return False
    for message in _messages(exc):
        lowered = message.lower()
        if "unknown tool name" in lowered:
            return True
        if "tool" in lowered and "not found" in lowered:
            return True
    return False


def hallucinated_tool_name(exc: BaseException) -> str:
    for message in _messages(exc):
        for pattern in (_TOOL_NOT_FOUND, _UNKNOWN_TOOL):
            match = pattern.search(message)
            if match:
                return match.group(1)
    return "unknown"


def runtime_provider(runtime: Any, default: str = "openai") -> str:
    getter = getattr(runtime, "get_provider", None)
    if callable(getter):
        provider = getter()
        if provider:
            return str(provider)
    return default


__all__ = [
    "ExecutionRuntime",
    "MAX_HALLUCINATION_RETRIES",
    "RunStream",
    "SupportsInterceptors",
    "hallucinated_tool_name",
    "is_hallucinated_tool_error",
    "runtime_provider",
]
