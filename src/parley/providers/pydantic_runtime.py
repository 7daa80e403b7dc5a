"""Execution runtime backed by a pydantic-ai `Agent`.

Tools registered with `requires_approval=True` pause the run: the agent returns
`DeferredToolRequests`, which this runtime reports as interruptions together
with an `ApprovalContinuation` handle. Continuing the run sends the recorded
decisions back as `DeferredToolResults`. A registered tool interceptor may
answer an approved call with text, which reaches the model as a denial.

pydantic-ai stream events are translated into the plain dict events that the
session's normalizer and command-message extractor read.
"""

from __future__ import annotations

import contextlib
import inspect
import json
import logging
import uuid
from typing import Any, AsyncIterator, Callable, Dict, Iterable, Sequence

from pydantic_ai import (
    Agent,
    AgentRunResultEvent,
    DeferredToolRequests,
    DeferredToolResults,
    FunctionToolCallEvent,
    FunctionToolResultEvent,
    ModelRequest,
    ModelResponse,
    PartDeltaEvent,
    PartStartEvent,
    RetryPromptPart,
    TextPart,
    TextPartDelta,
    ThinkingPart,
    ThinkingPartDelta,
    Tool,
    ToolCallPart,
    ToolDenied,
    ToolReturnPart,
    UserPromptPart,
)

from parley.engine.approval import RemoveInterceptor, ToolInterceptor
from parley.engine.normalizer import field_of
from parley.engine.tool_args import call_id_of, coerce_tool_args, raw_item_of
from parley.log_utils import log_chunks_enabled, log_event

logger = logging.getLogger(__name__)

PROVIDER_ID = "pydantic-ai"
DEFAULT_AGENT_NAME = "Agent"
UNKNOWN_TOOL_PREFIX = "Unknown tool name"

RetryCallback = Callable[[], None]


def create_agent(
    model: Any,
    *,
    instructions: str | None = None,
    tools: Iterable[Callable[..., Any]] = (),
    approval_tools: Iterable[Callable[..., Any]] = (),
    name: str | None = None,
) -> Agent[None, str | DeferredToolRequests]:
    """Build an agent whose `approval_tools` pause the run for a human decision."""

    registered = [Tool(fn, takes_ctx=False) for fn in tools]
    registered += [Tool(fn, takes_ctx=False, requires_approval=True) for fn in approval_tools]
    return Agent(
        model,
        output_type=[str, DeferredToolRequests],
        instructions=instructions,
        tools=registered,
        name=name,
    )


# History conversion -----------------------------------------------------------


def _part_output(part: Any) -> str:
    if isinstance(part, RetryPromptPart):
        return part.model_response()
    response_str = getattr(part, "model_response_str", None)
    if callable(response_str):
        return response_str()
    content = getattr(part, "content", None)
    if isinstance(content, str):
        return content
    return json.dumps(content, default=str)


def _call_arguments(part: ToolCallPart) -> str:
    return part.args_as_json_str()


def call_item(part: ToolCallPart) -> Dict[str, Any]:
    return {
        "type": "function_call",
        "callId": part.tool_call_id,
        "name": part.tool_name,
        "arguments": _call_arguments(part),
    }


def result_item(part: Any) -> Dict[str, Any]:
    return {
        "type": "function_call_result",
        "callId": part.tool_call_id,
        "name": part.tool_name,
        "output": _part_output(part),
    }


def _user_text(part: UserPromptPart) -> str:
    content = part.content
    if isinstance(content, str):
        return content
    return "".join(chunk for chunk in content if isinstance(chunk, str))


def is_unknown_tool_retry(part: Any) -> bool:
    """True for the retry pydantic-ai sends back when the model called a tool that does not exist."""

    return (
        isinstance(part, RetryPromptPart)
        and isinstance(part.content, str)
        and part.content.startswith(UNKNOWN_TOOL_PREFIX)
    )


def messages_to_items(messages: Sequence[Any], *, skip_unknown_tools: bool = False) -> list[Dict[str, Any]]:
    """Flatten pydantic-ai messages into canonical history items.

    With `skip_unknown_tools`, calls to tools that do not exist are dropped
    together with the retry prompts that answered them.
    """

    unknown_calls: set[str] = set()
    if skip_unknown_tools:
        unknown_calls = {
            part.tool_call_id
            for message in messages
            for part in getattr(message, "parts", ())
            if is_unknown_tool_retry(part)
        }

    items: list[Dict[str, Any]] = []
    for message in messages:
        for part in getattr(message, "parts", ()):
            if getattr(part, "tool_call_id", None) in unknown_calls:
                continue
            if isinstance(part, UserPromptPart):
                items.append({"role": "user", "type": "message", "content": _user_text(part)})
            elif isinstance(part, TextPart):
                if part.content:
                    items.append(
                        {
                            "role": "assistant",
                            "type": "message",
                            "content": [{"type": "output_text", "text": part.content}],
                        }
                    )
            elif isinstance(part, ThinkingPart):
                if part.content:
                    items.append({"type": "reasoning", "content": [{"type": "input_text", "text": part.content}]})
            elif isinstance(part, ToolCallPart):
                items.append(call_item(part))
            elif isinstance(part, ToolReturnPart):
                items.append(result_item(part))
            elif isinstance(part, RetryPromptPart):
                if part.tool_name:
                    items.append(result_item(part))
                else:
                    items.append(
                        {"role": "user", "type": "message", "content": part.model_response(), "source": "retry_prompt"}
                    )
    return items


def _assistant_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(str(part.get("text") or "") for part in content if isinstance(part, dict))
    return ""


def items_to_messages(items: Sequence[Any]) -> tuple[str | None, list[Any]]:
    """Rebuild pydantic-ai messages from canonical items.

    A trailing user message becomes the prompt of the next run; everything
    before it is returned as message history.
    """

    items = list(items)
    prompt: str | None = None
    if items and field_of(raw_item_of(items[-1]), "role") == "user":
        prompt = _assistant_text(field_of(raw_item_of(items.pop()), "content"))

    messages: list[Any] = []
    pending_kind: str | None = None
    pending_parts: list[Any] = []

    def flush() -> None:
        nonlocal pending_parts, pending_kind
        if pending_parts:
            cls = ModelRequest if pending_kind == "request" else ModelResponse
            messages.append(cls(parts=pending_parts))
        pending_parts = []
        pending_kind = None

    for item in items:
        raw = raw_item_of(item)
        kind = field_of(raw, "type")
        role = field_of(raw, "role")
        if role == "user":
            target, part = "request", UserPromptPart(content=_assistant_text(field_of(raw, "content")))
        elif role == "assistant" and kind == "message":
            target, part = "response", TextPart(content=_assistant_text(field_of(raw, "content")))
        elif kind == "function_call":
            target, part = "response", ToolCallPart(
                tool_name=str(field_of(raw, "name")),
                args=field_of(raw, "arguments"),
                tool_call_id=str(call_id_of(raw)),
            )
        elif kind in {"function_call_result", "function_call_output"}:
            target, part = "request", ToolReturnPart(
                tool_name=str(field_of(raw, "name") or ""),
                content=field_of(raw, "output"),
                tool_call_id=str(call_id_of(raw)),
            )
        else:
            continue
        if pending_kind not in (None, target):
            flush()
        pending_kind = target
        pending_parts.append(part)
    flush()
    return prompt, messages


def interruption_from_part(part: ToolCallPart, agent_name: str) -> Dict[str, Any]:
    return {**call_item(part), "agent": {"name": agent_name}}


# Continuation ----------------------------------------------------------------


class ApprovalContinuation:
    """Paused run plus the decisions recorded for its deferred calls."""

    def __init__(self, requests: DeferredToolRequests, messages: Sequence[Any], response_id: str) -> None:
        self.requests = requests
        self.messages = list(messages)
        self.response_id = response_id
        self.decisions: Dict[str, bool] = {}

    def _call_id(self, interruption: Any) -> str:
        call_id = call_id_of(interruption)
        if not call_id:
            raise ValueError("interruption has no tool call id")
        return call_id

    def approve(self, interruption: Any) -> None:
        self.decisions[self._call_id(interruption)] = True

    def reject(self, interruption: Any) -> None:
        self.decisions[self._call_id(interruption)] = False


@contextlib.asynccontextmanager
async def _open_events(handle: Any) -> AsyncIterator[Any]:
    """Accept both the context-manager and the bare iterator forms of `run_stream_events`."""

    if inspect.isawaitable(handle):
        handle = await handle
    if hasattr(handle, "__aenter__"):
        async with handle as events:
            yield events
        return
    try:
        yield handle
    finally:
        closer = getattr(handle, "aclose", None)
        if callable(closer):
            await closer()


class PydanticRunStream:
    """One agent run exposed through the session's stream contract."""

    def __init__(
        self,
        runtime: PydanticAgentRuntime,
        *,
        prompt: str | None,
        history: Sequence[Any],
        deferred_results: DeferredToolResults | None = None,
    ) -> None:
        self._runtime = runtime
        self._prompt = prompt
        self._history = list(history)
        self._deferred_results = deferred_results
        self._handle: Any = None
        self._cancelled = False
        self._completed: Dict[str, Any] | None = None

        self.last_response_id: str | None = None
        self.interruptions: list[Dict[str, Any]] = []
        self.state: ApprovalContinuation | None = None
        self.new_items: list[Dict[str, Any]] = []
        self.history: list[Dict[str, Any]] = []
        self.final_output: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        handle = self._handle
        canceller = getattr(handle, "cancel", None)
        if callable(canceller):
            canceller()

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self._events()

    async def _events(self) -> AsyncIterator[Dict[str, Any]]:
        runtime = self._runtime
        runtime._active.add(self)
        try:
            handle = runtime.agent.run_stream_events(
                self._prompt,
                message_history=self._history or None,
                deferred_tool_results=self._deferred_results,
                model=runtime.model,
                model_settings=runtime.model_settings or None,
            )
            async with _open_events(handle) as events:
                self._handle = events
                async for event in events:
                    if self._cancelled:
                        break
                    if isinstance(event, AgentRunResultEvent):
                        self._finish(event.result)
                        continue
                    for raw in self._translate(event):
                        yield raw
        except Exception as exc:
            if not self._cancelled:
                raise
            log_event(logger, "pydantic_runtime.run.cancelled", level=logging.DEBUG, error=type(exc).__name__)
        finally:
            self._handle = None
            runtime._active.discard(self)

    def _translate(self, event: Any) -> list[Dict[str, Any]]:
        if log_chunks_enabled():
            log_event(logger, "pydantic_runtime.event", level=logging.DEBUG, kind=type(event).__name__)

        if isinstance(event, PartStartEvent):
            part = event.part
            if isinstance(part, TextPart) and part.content:
                return [{"type": "output_text_delta", "delta": part.content}]
            if isinstance(part, ThinkingPart) and part.content:
                return [{"type": "reasoning_delta", "delta": part.content}]
            return []

        if isinstance(event, PartDeltaEvent):
            delta = event.delta
            if isinstance(delta, TextPartDelta) and delta.content_delta:
                return [{"type": "output_text_delta", "delta": delta.content_delta}]
            if isinstance(delta, ThinkingPartDelta) and delta.content_delta:
                return [{"type": "reasoning_delta", "delta": delta.content_delta}]
            return []

        if isinstance(event, FunctionToolCallEvent):
            return [
                {
                    "type": "run_item_stream_event",
                    "name": "tool_called",
                    "item": {"type": "tool_call_item", "rawItem": call_item(event.part)},
                }
            ]

        if isinstance(event, FunctionToolResultEvent):
            part = getattr(event, "part", None) or getattr(event, "result", None)
            if part is None:
                return []
            if isinstance(part, RetryPromptPart):
                self._runtime.notify_retry()
            if is_unknown_tool_retry(part):
                return []
            raw = result_item(part)
            return [
                {
                    "type": "run_item_stream_event",
                    "name": "tool_output",
                    "item": {"type": "tool_call_output_item", "rawItem": raw, "output": raw["output"]},
                }
            ]
        return []

    def _finish(self, result: Any) -> None:
        messages = list(result.all_messages())
        response_id = uuid.uuid4().hex
        self._runtime.remember_thread(response_id, messages)
        self.last_response_id = response_id
        self.history = messages_to_items(messages)
        self.new_items = messages_to_items(result.new_messages(), skip_unknown_tools=True)

        output = result.output
        if isinstance(output, DeferredToolRequests):
            agent_name = self._runtime.agent_name
            self.interruptions = [interruption_from_part(part, agent_name) for part in output.approvals]
            if output.calls:
                log_event(
                    logger,
                    "pydantic_runtime.external_calls.unsupported",
                    level=logging.WARNING,
                    tools=[part.tool_name for part in output.calls],
                )
            if self.interruptions:
                self.state = ApprovalContinuation(output, messages, response_id)
        else:
            self.final_output = output if isinstance(output, str) else str(output)

        usage = getattr(result, "usage", None)
        if callable(usage):
            usage = usage()
        self._completed = {
            "usage": {
                "input_tokens": getattr(usage, "input_tokens", None),
                "output_tokens": getattr(usage, "output_tokens", None),
                "total_tokens": getattr(usage, "total_tokens", None),
            },
            "output": self.final_output,
        }

    async def wait_completed(self) -> Dict[str, Any] | None:
        return self._completed


class PydanticAgentRuntime:
    """Drives a pydantic-ai agent; threads are kept in memory keyed by response id."""

    def __init__(
        self,
        agent: Agent[Any, Any],
        *,
        agent_name: str | None = None,
        model_settings: Dict[str, Any] | None = None,
        provider: str | None = None,
    ) -> None:
        self.agent = agent
        self.provider = provider
        self.agent_name = agent_name or getattr(agent, "name", None) or DEFAULT_AGENT_NAME
        self.model: Any = None
        self.model_settings: Dict[str, Any] = dict(model_settings or {})
        self._threads: Dict[str, list[Any]] = {}
        self._interceptors: list[ToolInterceptor] = []
        self._active: set[PydanticRunStream] = set()
        self._retry_callback: RetryCallback | None = None

    def get_provider(self) -> str:
        """Explicit provider, else the one the active model declares, else `pydantic-ai`."""

        if self.provider:
            return self.provider
        model = self.model if self.model is not None else self.agent.model
        return getattr(model, "provider_id", None) or PROVIDER_ID

    def set_provider(self, provider: str | None) -> None:
        self.provider = provider

    def remember_thread(self, response_id: str, messages: Sequence[Any]) -> None:
        self._threads[response_id] = list(messages)

    async def start_stream(self, input: str | list[Any], *, previous_response_id: str | None = None) -> PydanticRunStream:
        if isinstance(input, str):
            history = self._threads.get(previous_response_id or "", [])
            prompt: str | None = input
        else:
            prompt, history = items_to_messages(input)
        log_event(
            logger,
            "pydantic_runtime.stream.start",
            level=logging.DEBUG,
            previous_response_id=previous_response_id,
            history_len=len(history),
        )
        return PydanticRunStream(self, prompt=prompt, history=history)

    async def continue_run_stream(
        self, state: Any, *, previous_response_id: str | None = None
    ) -> PydanticRunStream:
        if not isinstance(state, ApprovalContinuation):
            raise TypeError(f"Unsupported continuation state: {type(state).__name__}")
        results = DeferredToolResults()
        for part in state.requests.approvals:
            approved = state.decisions.get(part.tool_call_id, False)
            if not approved:
                results.approvals[part.tool_call_id] = ToolDenied()
                continue
            message = await self._intercept(part)
            results.approvals[part.tool_call_id] = ToolDenied(message) if message is not None else True
        log_event(
            logger,
            "pydantic_runtime.stream.continue",
            level=logging.DEBUG,
            response_id=state.response_id,
            decisions=len(results.approvals),
        )
        return PydanticRunStream(self, prompt=None, history=state.messages, deferred_results=results)

    async def _intercept(self, part: ToolCallPart) -> str | None:
        args = coerce_tool_args(part.args)
        for interceptor in list(self._interceptors):
            message = await interceptor(part.tool_name, args, part.tool_call_id)
            if message is not None:
                return message
        return None

    def add_tool_interceptor(self, interceptor: ToolInterceptor) -> RemoveInterceptor:
        self._interceptors.append(interceptor)

        def _remove() -> None:
            with contextlib.suppress(ValueError):
                self._interceptors.remove(interceptor)

        return _remove

    @property
    def interceptor_count(self) -> int:
        return len(self._interceptors)

    def abort(self) -> None:
        for stream in list(self._active):
            stream.cancel()

    def clear_conversations(self) -> None:
        self._threads.clear()

    def set_model(self, model: Any) -> None:
        self.model = model

    def set_temperature(self, temperature: float | None) -> None:
        if temperature is None:
            self.model_settings.pop("temperature", None)
        else:
            self.model_settings["temperature"] = temperature

    def set_reasoning_effort(self, effort: str | None) -> None:
        if effort in (None, "default"):
            self.model_settings.pop("openai_reasoning_effort", None)
        else:
            self.model_settings["openai_reasoning_effort"] = effort

    def set_retry_callback(self, callback: RetryCallback | None) -> None:
        self._retry_callback = callback

    def notify_retry(self) -> None:
        if self._retry_callback is not None:
            self._retry_callback()


__all__ = [
    "ApprovalContinuation",
    "PROVIDER_ID",
    "PydanticAgentRuntime",
    "PydanticRunStream",
    "create_agent",
    "interruption_from_part",
    "items_to_messages",
    "messages_to_items",
]
