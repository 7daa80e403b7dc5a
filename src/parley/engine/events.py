"""Event payloads emitted by a conversation turn."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias


CommandStatus = Literal["pending", "running", "completed", "failed"]


@dataclass
class CommandMessage:
    """One rendered tool invocation, keyed by a stable id for dedup."""

    id: str
    command: str
    output: str
    status: CommandStatus = "completed"
    success: bool | None = None
    failure_reason: str | None = None
    is_approval_rejection: bool = False
    call_id: str | None = None
    tool_name: str | None = None
    tool_args: Any = None
    sender: Literal["command"] = "command"


@dataclass(frozen=True)
class ApprovalRequest:
    """What the user is asked to approve before a tool call proceeds."""

    agent_name: str
    tool_name: str
    arguments_text: str
    raw_interruption: Any = None
    call_id: str | None = None


@dataclass(frozen=True)
class TextDelta:
    delta: str
    full_text: str
    type: Literal["text_delta"] = field(default="text_delta", init=False)


@dataclass(frozen=True)
class ReasoningDelta:
    delta: str
    full_text: str
    type: Literal["reasoning_delta"] = field(default="reasoning_delta", init=False)


@dataclass(frozen=True)
class ToolStarted:
    tool_call_id: str
    tool_name: str
    arguments: Any
    type: Literal["tool_started"] = field(default="tool_started", init=False)


@dataclass(frozen=True)
class CommandMessageEvent:
    message: CommandMessage
    type: Literal["command_message"] = field(default="command_message", init=False)


@dataclass(frozen=True)
class ApprovalRequired:
    approval: ApprovalRequest
    type: Literal["approval_required"] = field(default="approval_required", init=False)


@dataclass(frozen=True)
class RetryEvent:
    """Emitted before the turn is retried after a hallucinated tool call."""

    tool_name: str
    attempt: int
    max_retries: int
    error_message: str
    type: Literal["retry"] = field(default="retry", init=False)


@dataclass(frozen=True)
class FinalEvent:
    final_text: str
    reasoning_text: str | None = None
    command_messages: list[CommandMessage] = field(default_factory=list)
    usage: dict[str, Any] | None = None
    type: Literal["final"] = field(default="final", init=False)


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    type: Literal["error"] = field(default="error", init=False)


ConversationEvent: TypeAlias = (
    TextDelta
    | ReasoningDelta
    | ToolStarted
    | CommandMessageEvent
    | ApprovalRequired
    | RetryEvent
    | FinalEvent
    | ErrorEvent
)


@dataclass(frozen=True)
class TurnResponse:
    """Buffered outcome of a turn that finished with an answer."""

    final_text: str
    command_messages: list[CommandMessage] = field(default_factory=list)
    reasoning_text: str | None = None
    usage: dict[str, Any] | None = None
    type: Literal["response"] = field(default="response", init=False)


@dataclass(frozen=True)
class ApprovalResponse:
    """Buffered outcome of a turn that stopped for approval."""

    approval: ApprovalRequest
    type: Literal["approval_required"] = field(default="approval_required", init=False)


TurnOutcome: TypeAlias = TurnResponse | ApprovalResponse


__all__ = [
    "ApprovalRequest",
    "ApprovalRequired",
    "ApprovalResponse",
    "CommandMessage",
    "CommandMessageEvent",
    "CommandStatus",
    "ConversationEvent",
    "ErrorEvent",
    "FinalEvent",
    "ReasoningDelta",
    "RetryEvent",
    "TextDelta",
    "ToolStarted",
    "TurnOutcome",
    "TurnResponse",
]
