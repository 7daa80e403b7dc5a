"""Pending and aborted tool-approval bookkeeping for one session.

A session is in one of three approval states:

* no pending approval,
* a pending approval waiting for the user's answer,
* an aborted approval: the user cancelled while the runtime was still waiting
  for the tool result. The next turn must resolve it (as a rejection carrying
  the new user text) before any new input is processed.

Only one context exists at a time; moving to "aborted" replaces "pending".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Protocol

from parley.engine.normalizer import field_of
from parley.engine.tool_args import call_id_of
from parley.log_utils import log_event

logger = logging.getLogger(__name__)

ApprovalPhase = Literal["idle", "pending", "aborted"]

RemoveInterceptor = Callable[[], None]
ToolInterceptor = Callable[[str, Any, "str | None"], Awaitable["str | None"]]


class ContinuationState(Protocol):
    """Opaque continuation handle owned by the execution runtime."""

    def approve(self, interruption: Any) -> Any: ...

    def reject(self, interruption: Any) -> Any: ...


@dataclass
class ApprovalContext:
    """Everything needed to resume a run that stopped for approval."""

    state: ContinuationState
    interruption: Any
    emitted_command_ids: set[str] = field(default_factory=set)
    tool_call_arguments_by_id: dict[str, Any] = field(default_factory=dict)
    remove_interceptor: RemoveInterceptor | None = None

    @property
    def tool_name(self) -> str | None:
        name = field_of(self.interruption, "name")
        if name is None:
            name = field_of(field_of(self.interruption, "rawItem"), "name")
        return None if name is None else str(name)

    @property
    def call_id(self) -> str | None:
        return call_id_of(self.interruption)


def rejection_message(reason: str | None = None) -> str:
    if reason:
        return f"Tool execution was not approved. User's reason: {reason}"
    return "Tool execution was not approved."


def superseded_message(new_input: str) -> str:
    return f"Tool execution was not approved. User provided new input instead: {new_input}"


def build_rejection_interceptor(
    context: ApprovalContext,
    message: str,
    on_match: Callable[[str | None], None] | None = None,
) -> ToolInterceptor:
    """Interceptor that answers the pending call with `message` instead of running it.

    It matches on tool name and, when both sides know it, the call id. It fires
    once; later calls fall through to normal execution.
    """

    expected_name = context.tool_name
    expected_call_id = context.call_id
    fired = False

    async def _intercept(name: str, params: Any, tool_call_id: str | None = None) -> str | None:
        nonlocal fired
        if fired or name != expected_name:
            return None
        if expected_call_id and tool_call_id and str(tool_call_id) != expected_call_id:
            return None
        fired = True
        if on_match is not None:
            on_match(tool_call_id or expected_call_id)
        log_event(
            logger,
            "approval.interceptor.fired",
            level=logging.DEBUG,
            tool=name,
            tool_call_id=tool_call_id or expected_call_id,
        )
        return message

    return _intercept


class ApprovalState:
    """Holds the single pending or aborted `ApprovalContext` of a session."""

    def __init__(self) -> None:
        self._pending: ApprovalContext | None = None
        self._aborted: ApprovalContext | None = None

    @property
    def phase(self) -> ApprovalPhase:
        if self._pending is not None:
            return "pending"
        if self._aborted is not None:
            return "aborted"
        return "idle"

    def get_pending(self) -> ApprovalContext | None:
        return self._pending

    def get_aborted(self) -> ApprovalContext | None:
        return self._aborted

    def set_pending(self, context: ApprovalContext) -> None:
        self._pending = context
        self._aborted = None
        log_event(
            logger,
            "session.approval.pending",
            tool=context.tool_name,
            tool_call_id=context.call_id,
        )

    def clear_pending(self) -> ApprovalContext | None:
        context, self._pending = self._pending, None
        return context

    def abort_pending(self) -> bool:
        """Move a pending approval to aborted. Returns False when none was pending."""

        if self._pending is None:
            return False
        self._aborted, self._pending = self._pending, None
        log_event(
            logger,
            "session.approval.aborted",
            tool=self._aborted.tool_name,
            tool_call_id=self._aborted.call_id,
        )
        return True

    def consume_aborted(self) -> ApprovalContext | None:
        context, self._aborted = self._aborted, None
        return context

    def reset(self) -> None:
        for context in (self._pending, self._aborted):
            if context is not None and context.remove_interceptor is not None:
                context.remove_interceptor()
                context.remove_interceptor = None
        self._pending = None
        self._aborted = None


__all__ = [
    "ApprovalContext",
    "ApprovalPhase",
    "ApprovalState",
    "ContinuationState",
    "RemoveInterceptor",
    "ToolInterceptor",
    "build_rejection_interceptor",
    "rejection_message",
    "superseded_message",
]
