from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from parley.engine.approval import RemoveInterceptor, ToolInterceptor
from parley.engine.tool_args import call_id_of, coerce_tool_args


def text_event(delta: str) -> dict[str, Any]:
    return {"type": "output_text_delta", "delta": delta}


def tool_called_event(call_id: str, name: str, arguments: str) -> dict[str, Any]:
    return {
        "type": "run_item_stream_event",
        "name": "tool_called",
        "item": {
            "type": "tool_call_item",
            "rawItem": {"type": "function_call", "callId": call_id, "name": name, "arguments": arguments},
        },
    }


def tool_output_event(call_id: str, name: str, output: str) -> dict[str, Any]:
    return {
        "type": "run_item_stream_event",
        "name": "tool_output",
        "item": {
            "type": "tool_call_output_item",
            "rawItem": {"type": "function_call_result", "callId": call_id, "name": name, "output": output},
        },
    }


class FakeState:
    """Continuation handle that records the decisions applied to it."""

    def __init__(self) -> None:
        self.approved: list[Any] = []
        self.rejected: list[Any] = []

    def approve(self, interruption: Any) -> None:
        self.approved.append(interruption)

    def reject(self, interruption: Any) -> None:
        self.rejected.append(interruption)


class FakeStream:
    def __init__(
        self,
        events: list[Any] | None = None,
        *,
        history: list[Any] | None = None,
        new_items: list[Any] | None = None,
        interruptions: list[Any] | None = None,
        state: Any = None,
        last_response_id: str | None = "resp_1",
        final_output: Any = None,
        completed: Any = None,
        error: BaseException | None = None,
    ) -> None:
        self._events = list(events or [])
        self._completed = completed
        self._error = error
        self.history = history
        self.new_items = new_items or []
        self.interruptions = interruptions or []
        self.state = state
        self.last_response_id = last_response_id
        self.final_output = final_output

    def __aiter__(self) -> AsyncIterator[Any]:
        async def _gen() -> AsyncIterator[Any]:
            for event in self._events:
                yield event
            if self._error is not None:
                raise self._error

        return _gen()

    async def wait_completed(self) -> Any:
        return self._completed


class FakeRuntime:
    """Scripted runtime: each call pops the next stream (or exception) from its queue."""

    def __init__(
        self,
        streams: list[Any] | None = None,
        *,
        continue_streams: list[Any] | None = None,
        provider: str | None = None,
    ) -> None:
        self._streams = list(streams or [])
        self._continue_streams = list(continue_streams or [])
        self.provider = provider
        self.start_calls: list[tuple[Any, str | None]] = []
        self.continue_calls: list[tuple[Any, str | None]] = []
        self.aborted = 0
        self.cleared = 0

    def get_provider(self) -> str | None:
        return self.provider

    @staticmethod
    def _next(queue: list[Any]) -> Any:
        item = queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def start_stream(self, input: Any, *, previous_response_id: str | None = None) -> Any:
        self.start_calls.append((input, previous_response_id))
        return self._next(self._streams)

    async def continue_run_stream(self, state: Any, *, previous_response_id: str | None = None) -> Any:
        self.continue_calls.append((state, previous_response_id))
        return self._next(self._continue_streams)

    def abort(self) -> None:
        self.aborted += 1

    def clear_conversations(self) -> None:
        self.cleared += 1


class InterceptingRuntime(FakeRuntime):
    """Fake runtime that consults tool interceptors for approved calls, like the real one."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.interceptors: list[ToolInterceptor] = []
        self.intercepted: list[str] = []

    def add_tool_interceptor(self, interceptor: ToolInterceptor) -> RemoveInterceptor:
        self.interceptors.append(interceptor)

        def _remove() -> None:
            if interceptor in self.interceptors:
                self.interceptors.remove(interceptor)

        return _remove

    async def continue_run_stream(self, state: Any, *, previous_response_id: str | None = None) -> Any:
        for interruption in getattr(state, "approved", []):
            for interceptor in list(self.interceptors):
                message = await interceptor(
                    interruption["name"],
                    coerce_tool_args(interruption.get("arguments")),
                    call_id_of(interruption),
                )
                if message is not None:
                    self.intercepted.append(message)
                    break
        return await super().continue_run_stream(state, previous_response_id=previous_response_id)


def shell_interruption(call_id: str = "call_9", command: str = "rm -rf build") -> dict[str, Any]:
    return {
        "type": "function_call",
        "callId": call_id,
        "name": "shell",
        "arguments": '{"command": "%s"}' % command,
        "agent": {"name": "Coder"},
    }


async def collect(events: AsyncIterator[Any]) -> list[Any]:
    return [event async for event in events]
