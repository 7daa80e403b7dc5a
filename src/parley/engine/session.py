"""One conversation with an execution runtime, driven turn by turn.

`run()` and `continue_run()` are async generators of `ConversationEvent`s. Every
turn ends in exactly one of: an `ApprovalRequired` event, a `FinalEvent`, or an
`ErrorEvent` followed by the exception being re-raised. `send_message()` and
`handle_approval_decision()` drain those generators for callers that only want
the outcome.
"""

from __future__ import annotations

import contextlib
import dataclasses
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Iterable

from parley.engine.approval import (
    ApprovalContext,
    ApprovalState,
    RemoveInterceptor,
    ToolInterceptor,
    build_rejection_interceptor,
    rejection_message,
    superseded_message,
)
from parley.engine.command_messages import CommandMessageExtractor
from parley.engine.events import (
    ApprovalRequest,
    ApprovalRequired,
    ApprovalResponse,
    CommandMessage,
    CommandMessageEvent,
    ConversationEvent,
    ErrorEvent,
    FinalEvent,
    ReasoningDelta,
    RetryEvent,
    TextDelta,
    ToolStarted,
    TurnOutcome,
    TurnResponse,
)
from parley.engine.normalizer import extract_reasoning_delta, extract_text_delta, field_of
from parley.engine.runtime import (
    MAX_HALLUCINATION_RETRIES,
    ExecutionRuntime,
    SupportsInterceptors,
    hallucinated_tool_name,
    is_hallucinated_tool_error,
    runtime_provider,
)
from parley.engine.store import ConversationStore
from parley.engine.tool_args import (
    arguments_of,
    attach_cached_arguments,
    call_id_of,
    capture_tool_call_arguments,
    parse_json_arguments,
    raw_item_of,
)
from parley.engine.tool_formatters import approval_arguments_text
from parley.engine.usage import NormalizedUsage, extract_stream_usage, extract_usage
from parley.log_utils import log_chunks_enabled, log_context, log_event
from parley.providers.registry import supports_conversation_chaining

logger = logging.getLogger(__name__)

DEFAULT_FINAL_TEXT = "Done."
DEFAULT_AGENT_NAME = "Agent"
UNKNOWN_TOOL_NAME = "Unknown Tool"
APPROVE_ANSWERS = frozenset({"y", "yes"})


@dataclass
class SessionCallbacks:
    """Optional observers for the buffered `send_message` / `handle_approval_decision` calls."""

    on_text_chunk: Callable[[str, str], None] | None = None
    on_reasoning_chunk: Callable[[str, str], None] | None = None
    on_command_message: Callable[[CommandMessage], None] | None = None
    on_event: Callable[[ConversationEvent], None] | None = None

    def dispatch(self, event: ConversationEvent) -> None:
        if self.on_event is not None:
            self.on_event(event)
        if isinstance(event, TextDelta) and self.on_text_chunk is not None:
            self.on_text_chunk(event.full_text, event.delta)
        elif isinstance(event, ReasoningDelta) and self.on_reasoning_chunk is not None:
            self.on_reasoning_chunk(event.full_text, event.delta)
        elif isinstance(event, CommandMessageEvent) and self.on_command_message is not None:
            self.on_command_message(event.message)


@dataclass
class _TurnAccumulator:
    text: str = ""
    reasoning: str = ""
    emitted_ids: set[str] = field(default_factory=set)
    usage: NormalizedUsage | None = None


def _error_message(exc: BaseException) -> str:
    return str(getattr(exc, "message", None) or exc)


class ConversationSession:
    """Owns the history, thread handle, approval state and argument cache of one conversation."""

    def __init__(
        self,
        runtime: ExecutionRuntime,
        *,
        session_id: str | None = None,
        store: ConversationStore | None = None,
        extractor: CommandMessageExtractor | None = None,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex
        self.runtime = runtime
        self.store = store or ConversationStore()
        self.extractor = extractor or CommandMessageExtractor()
        self.approval = ApprovalState()
        self.previous_response_id: str | None = None
        self.text_delta_count = 0
        self.reasoning_delta_count = 0
        self._tool_args: dict[str, Any] = {}

    # Logging -----------------------------------------------------------------

    def _log(self, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
        with log_context(session_id=self.id):
            log_event(logger, event, level=level, **fields)

    # Settings ----------------------------------------------------------------

    def _delegate(self, method: str, *args: Any) -> bool:
        target = getattr(self.runtime, method, None)
        if not callable(target):
            self._log("session.runtime.unsupported", level=logging.DEBUG, method=method)
            return False
        target(*args)
        return True

    def set_model(self, model: Any) -> None:
        self._delegate("set_model", model)

    def set_reasoning_effort(self, effort: str | None) -> None:
        self._delegate("set_reasoning_effort", effort)

    def set_temperature(self, temperature: float | None) -> None:
        self._delegate("set_temperature", temperature)

    def set_provider(self, provider: str) -> None:
        self._delegate("set_provider", provider)

    def set_retry_callback(self, callback: Callable[[], None] | None) -> None:
        self._delegate("set_retry_callback", callback)

    def add_shell_context(self, text: str) -> None:
        self.store.add_shell_context(text)

    # Lifecycle -----------------------------------------------------------------

    @property
    def pending_approval(self) -> ApprovalContext | None:
        return self.approval.get_pending()

    def reset(self) -> None:
        self.previous_response_id = None
        self.store.clear()
        self.approval.reset()
        self._tool_args.clear()
        self.extractor.clear_approval_rejections()
        self.extractor.diagnostics.clear()
        self._delegate("clear_conversations")
        self._log("session.reset")

    def abort(self) -> None:
        """Stop the in-flight stream; a pending approval is kept for the next turn."""

        self._delegate("abort")
        if self.approval.abort_pending():
            self._log("session.abort", level=logging.DEBUG, pending_approval=True)

    # Interceptors --------------------------------------------------------------

    def _supports_interceptors(self) -> bool:
        return isinstance(self.runtime, SupportsInterceptors)

    def _install_interceptor(self, interceptor: ToolInterceptor) -> RemoveInterceptor:
        runtime: SupportsInterceptors = self.runtime  # type: ignore[assignment]
        return runtime.add_tool_interceptor(interceptor)

    def _restore_tool_args(self, cached: dict[str, Any]) -> None:
        self._tool_args.clear()
        self._tool_args.update(cached)

    # Turns ----------------------------------------------------------------------

    async def run(
        self,
        text: str,
        *,
        hallucination_retry_count: int = 0,
        skip_user_message: bool = False,
    ) -> AsyncIterator[ConversationEvent]:
        """Send `text` as a new turn.

        An approval left behind by `abort()` is resolved first, as a rejection
        that carries `text`; the user message is only recorded once that
        resolution has failed and the normal flow takes over.
        """

        stream: Any = None
        try:
            aborted = self.approval.consume_aborted()
            if aborted is not None:
                resolved = False
                async with contextlib.aclosing(self._resume_aborted(aborted, text)) as resumed:
                    async for event in resumed:
                        yield event
                        if isinstance(event, (ApprovalRequired, FinalEvent)):
                            resolved = True
                if resolved:
                    return
            if not skip_user_message:
                self.store.add_user_message(text)

            provider = runtime_provider(self.runtime)
            chaining = supports_conversation_chaining(provider)
            self._log(
                "session.turn.start",
                provider=provider,
                chaining=chaining,
                attempt=hallucination_retry_count,
                previous_response_id=self.previous_response_id,
            )
            stream = await self.runtime.start_stream(
                text if chaining else self.store.get_history(),
                previous_response_id=self.previous_response_id,
            )
            acc = _TurnAccumulator()
            async for event in self._stream_events(stream, acc, preserve_tool_args=False):
                yield event
            self._absorb(stream)
            yield self._build_result(stream, acc)
        except Exception as exc:
            if is_hallucinated_tool_error(exc) and hallucination_retry_count < MAX_HALLUCINATION_RETRIES:
                attempt = hallucination_retry_count + 1
                tool_name = hallucinated_tool_name(exc)
                self._log(
                    "session.turn.retry",
                    level=logging.WARNING,
                    tool=tool_name,
                    attempt=attempt,
                    max_retries=MAX_HALLUCINATION_RETRIES,
                    error=_error_message(exc),
                )
                yield RetryEvent(
                    tool_name=tool_name,
                    attempt=attempt,
                    max_retries=MAX_HALLUCINATION_RETRIES,
                    error_message=_error_message(exc),
                )
                if stream is not None:
                    # keep the tool calls that did complete before the bad one
                    self.store.update_from_result(stream)
                    retry = self.run(text, hallucination_retry_count=attempt, skip_user_message=True)
                else:
                    self.store.remove_last_user_message()
                    retry = self.run(text, hallucination_retry_count=attempt)
                async for event in retry:
                    yield event
                return
            self._log("session.turn.error", level=logging.ERROR, error=_error_message(exc))
            yield ErrorEvent(message=_error_message(exc))
            raise

    async def _resume_aborted(self, context: ApprovalContext, text: str) -> AsyncIterator[ConversationEvent]:
        """Unblock a run still waiting on an aborted approval.

        The stalled call is answered with a rejection carrying `text`. Errors are
        logged and end the generator without a terminal event.
        """

        self._restore_tool_args(context.tool_call_arguments_by_id)
        remove: RemoveInterceptor | None = None
        self._log(
            "session.approval.abort_resume",
            level=logging.DEBUG,
            tool=context.tool_name,
            tool_call_id=context.call_id,
        )
        try:
            if self._supports_interceptors():
                interceptor = build_rejection_interceptor(
                    context,
                    superseded_message(text),
                    on_match=self.extractor.mark_approval_rejection,
                )
                remove = self._install_interceptor(interceptor)
                context.state.approve(context.interruption)
            else:
                self.extractor.mark_approval_rejection(context.call_id)
                context.state.reject(context.interruption)

            stream = await self.runtime.continue_run_stream(
                context.state, previous_response_id=self.previous_response_id
            )
            acc = _TurnAccumulator(emitted_ids=set(context.emitted_command_ids))
            async for event in self._stream_events(stream, acc, preserve_tool_args=True):
                yield event
            self._absorb(stream)
            yield self._build_result(stream, acc)
        except Exception as exc:
            self._log(
                "session.approval.abort_resume_failed",
                level=logging.WARNING,
                tool=context.tool_name,
                error=_error_message(exc),
            )
        finally:
            if remove is not None:
                remove()

    async def continue_run(self, answer: str, reason: str | None = None) -> AsyncIterator[ConversationEvent]:
        """Resolve the pending approval with `answer` and stream the rest of the run."""

        context = self.approval.get_pending()
        if context is None:
            return
        self.approval.clear_pending()

        approved = answer.strip().lower() in APPROVE_ANSWERS
        remove: RemoveInterceptor | None = None
        try:
            if approved:
                context.state.approve(context.interruption)
            elif self._supports_interceptors():
                interceptor = build_rejection_interceptor(
                    context,
                    rejection_message(reason),
                    on_match=self.extractor.mark_approval_rejection,
                )
                remove = self._install_interceptor(interceptor)
                context.remove_interceptor = remove
                context.state.approve(context.interruption)
            else:
                self.extractor.mark_approval_rejection(context.call_id)
                context.state.reject(context.interruption)
            self._log(
                "session.approval.resolved",
                approved=approved,
                tool=context.tool_name,
                tool_call_id=context.call_id,
                reason=reason,
            )

            self._restore_tool_args(context.tool_call_arguments_by_id)
            stream = await self.runtime.continue_run_stream(
                context.state, previous_response_id=self.previous_response_id
            )
            acc = _TurnAccumulator(emitted_ids=set(context.emitted_command_ids))
            async for event in self._stream_events(stream, acc, preserve_tool_args=True):
                yield event
            self._absorb(stream)
            yield self._build_result(stream, acc)
        except Exception as exc:
            self._log("session.turn.error", level=logging.ERROR, error=_error_message(exc))
            yield ErrorEvent(message=_error_message(exc))
            raise
        finally:
            if remove is not None:
                remove()
                context.remove_interceptor = None

    # Streaming ------------------------------------------------------------------

    def _command_events(self, items: Iterable[Any], acc: _TurnAccumulator) -> list[CommandMessageEvent]:
        items = list(items)
        attach_cached_arguments(items, self._tool_args)
        events: list[CommandMessageEvent] = []
        for message in self.extractor.extract(items, emitted_ids=acc.emitted_ids, arguments_by_id=self._tool_args):
            acc.emitted_ids.add(message.id)
            events.append(CommandMessageEvent(message=message))
        return events

    async def _stream_events(
        self,
        stream: Any,
        acc: _TurnAccumulator,
        *,
        preserve_tool_args: bool,
    ) -> AsyncIterator[ConversationEvent]:
        if not preserve_tool_args:
            self._tool_args.clear()
        self.text_delta_count = 0
        self.reasoning_delta_count = 0

        async for event in stream:
            usage = extract_usage(event)
            if usage:
                acc.usage = usage

            text = extract_text_delta(event)
            if text:
                acc.text += text
                self.text_delta_count += 1
                if log_chunks_enabled():
                    self._log("session.stream.text_delta", level=logging.DEBUG, chars=len(text))
                yield TextDelta(delta=text, full_text=acc.text)

            reasoning = extract_reasoning_delta(event)
            if reasoning:
                acc.reasoning += reasoning
                self.reasoning_delta_count += 1
                yield ReasoningDelta(delta=reasoning, full_text=acc.reasoning)

            kind = field_of(event, "type")
            if kind == "run_item_stream_event":
                item = field_of(event, "item")
                capture_tool_call_arguments(item, self._tool_args)
                raw = raw_item_of(item)
                if field_of(raw, "type") == "function_call":
                    call_id = call_id_of(raw)
                    if call_id:
                        arguments, _ = parse_json_arguments(arguments_of(item))
                        yield ToolStarted(
                            tool_call_id=call_id,
                            tool_name=str(field_of(raw, "name") or field_of(item, "name") or "unknown"),
                            arguments=arguments,
                        )
                for command_event in self._command_events([item], acc):
                    yield command_event
            elif kind == "tool_call_output_item" or field_of(raw_item_of(event), "type") == "function_call_output":
                capture_tool_call_arguments(event, self._tool_args)
                for command_event in self._command_events([event], acc):
                    yield command_event

        completed = await stream.wait_completed()
        usage = extract_stream_usage(completed, stream)
        if usage:
            acc.usage = usage

    def _absorb(self, stream: Any) -> None:
        # an aborted stream ends without a handle; the thread continues from the last one
        self.previous_response_id = field_of(stream, "last_response_id") or self.previous_response_id
        self.store.update_from_result(stream)

    def _build_result(self, stream: Any, acc: _TurnAccumulator) -> ApprovalRequired | FinalEvent:
        interruptions = list(field_of(stream, "interruptions") or [])
        if interruptions:
            interruption = interruptions[0]
            context = ApprovalContext(
                state=field_of(stream, "state"),
                interruption=interruption,
                emitted_command_ids=set(acc.emitted_ids),
                tool_call_arguments_by_id=dict(self._tool_args),
            )
            self.approval.set_pending(context)
            agent_name = field_of(field_of(interruption, "agent"), "name")
            return ApprovalRequired(
                approval=ApprovalRequest(
                    agent_name=str(agent_name or DEFAULT_AGENT_NAME),
                    tool_name=context.tool_name or UNKNOWN_TOOL_NAME,
                    arguments_text=approval_arguments_text(interruption),
                    raw_interruption=interruption,
                    call_id=context.call_id,
                )
            )

        self.approval.clear_pending()
        items = field_of(stream, "new_items") or field_of(stream, "history") or []
        messages = self.extractor.extract(items, emitted_ids=acc.emitted_ids, arguments_by_id=self._tool_args)
        final_output = field_of(stream, "final_output")
        final_text = acc.text or (str(final_output) if final_output else "") or DEFAULT_FINAL_TEXT
        return FinalEvent(
            final_text=final_text,
            reasoning_text=acc.reasoning or None,
            command_messages=messages,
            usage=acc.usage or extract_usage(stream),
        )

    # Buffered API ------------------------------------------------------------------

    async def _drain(
        self,
        events: AsyncIterator[ConversationEvent],
        callbacks: SessionCallbacks,
    ) -> TurnOutcome:
        final: FinalEvent | None = None
        async with contextlib.aclosing(events) as stream:
            async for event in stream:
                callbacks.dispatch(event)
                if isinstance(event, ApprovalRequired):
                    pending = self.approval.get_pending()
                    approval = event.approval
                    if pending is not None:
                        approval = dataclasses.replace(approval, raw_interruption=pending.interruption)
                    return ApprovalResponse(approval=approval)
                if isinstance(event, FinalEvent):
                    final = event
        if final is None:
            return TurnResponse(final_text=DEFAULT_FINAL_TEXT)
        return TurnResponse(
            final_text=final.final_text or DEFAULT_FINAL_TEXT,
            command_messages=list(final.command_messages),
            reasoning_text=final.reasoning_text or None,
            usage=final.usage,
        )

    async def send_message(self, text: str, callbacks: SessionCallbacks | None = None) -> TurnOutcome:
        return await self._drain(self.run(text), callbacks or SessionCallbacks())

    async def handle_approval_decision(
        self,
        answer: str,
        reason: str | None = None,
        callbacks: SessionCallbacks | None = None,
    ) -> TurnOutcome | None:
        """Buffered `continue_run`; returns None when nothing is waiting for approval."""

        if self.approval.get_pending() is None:
            return None
        return await self._drain(self.continue_run(answer, reason), callbacks or SessionCallbacks())


__all__ = ["ConversationSession", "SessionCallbacks"]
