"""Per-tool policies that render a tool result as a `CommandMessage`."""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from typing import Any, Callable

from parley.engine.events import CommandMessage
from parley.engine.normalizer import field_of
from parley.engine.tool_args import normalize_tool_arguments, raw_item_of

NO_OUTPUT = "No output"
UNKNOWN_COMMAND = "unknown"

SHELL_TOOLS = frozenset({"shell", "bash", "run_command"})
SEARCH_TOOLS = frozenset({"grep", "search", "code_search"})
PATCH_TOOLS = frozenset({"apply_patch"})

_EXIT_LINE = re.compile(r"^exit (-?\d+)$")


@dataclass
class ToolResult:
    """A tool result item with its arguments already resolved."""

    item: Any
    index: int
    tool_name: str
    call_id: str | None
    arguments: Any
    output_text: str
    is_approval_rejection: bool = False


Formatter = Callable[[ToolResult], list[CommandMessage]]


def output_text_of(item: Any) -> str:
    for source in (item, raw_item_of(item)):
        if source is None:
            continue
        output = field_of(source, "output")
        for candidate in (output, field_of(output, "text")):
            text = _stringify(candidate)
            if text:
                return text
    return ""


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return "\n".join(text for text in (_stringify(part) for part in value) if text)
    if isinstance(value, dict):
        for key in ("text", "output"):
            if isinstance(value.get(key), str):
                return value[key]
        return json.dumps(value)
    return str(value)


def _parse_output_json(text: str) -> Any:
    stripped = text.strip()
    if not stripped or stripped[0] not in "{[":
        return None
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        return None


def message_id(item: Any, index: int, sub_index: int = 0) -> str:
    """Stable id shared by the live event and the final snapshot of one call."""

    raw = raw_item_of(item)
    base = (
        field_of(raw, "id")
        or field_of(raw, "callId")
        or field_of(item, "id")
        or field_of(item, "callId")
        or f"{int(time.time() * 1000)}-{index}"
    )
    return f"{base}-{sub_index}"


def base_message(result: ToolResult, sub_index: int, **fields: Any) -> CommandMessage:
    return CommandMessage(
        id=message_id(result.item, result.index, sub_index),
        is_approval_rejection=result.is_approval_rejection,
        call_id=result.call_id,
        tool_name=result.tool_name,
        tool_args=result.arguments,
        **fields,
    )


def _opaque(result: ToolResult) -> str | None:
    """Arguments that could not be decoded are shown verbatim."""

    if isinstance(result.arguments, str) and result.arguments.strip():
        return result.arguments.strip()
    return None


def command_from_args(args: Any) -> str | None:
    if isinstance(args, str):
        return args or None
    command = field_of(args, "command")
    if isinstance(command, str) and command:
        return command
    commands = field_of(args, "commands")
    if isinstance(commands, (list, tuple)):
        joined = "\n".join(str(entry) for entry in commands if entry)
        return joined or None
    if isinstance(commands, str) and commands:
        return commands
    return None


# shell -------------------------------------------------------------------------


def _shell_outcome(outcome: Any) -> tuple[bool | None, str | None]:
    kind = field_of(outcome, "type")
    if kind == "timeout":
        return False, "timeout"
    if kind == "exit":
        code = field_of(outcome, "exitCode", field_of(outcome, "exit_code"))
        if code == 0:
            return True, None
        return False, f"exit code {code}"
    return None, None


def format_shell(result: ToolResult) -> list[CommandMessage]:
    command = command_from_args(result.arguments) or UNKNOWN_COMMAND
    parsed = _parse_output_json(result.output_text)
    entries = field_of(parsed, "output") if isinstance(parsed, dict) else None

    if isinstance(entries, list) and entries:
        messages = []
        for sub_index, entry in enumerate(entries):
            stdout = _stringify(field_of(entry, "stdout"))
            stderr = _stringify(field_of(entry, "stderr"))
            success, reason = _shell_outcome(field_of(entry, "outcome"))
            messages.append(
                base_message(
                    result,
                    sub_index,
                    command=str(field_of(entry, "command") or command),
                    output="\n".join(part for part in (stdout, stderr) if part) or NO_OUTPUT,
                    success=success,
                    failure_reason=reason,
                    status="completed" if success is not False else "failed",
                )
            )
        return messages

    head, _, body = result.output_text.partition("\n")
    success = None
    reason = None
    output = result.output_text
    match = _EXIT_LINE.match(head.strip())
    if match:
        code = int(match.group(1))
        success = code == 0
        reason = None if success else f"exit code {code}"
        output = body
    elif head.strip() == "timeout":
        success, reason, output = False, "timeout", body
    return [
        base_message(
            result,
            0,
            command=command,
            output=output if output.strip() else NO_OUTPUT,
            success=success,
            failure_reason=reason,
            status="failed" if success is False else "completed",
        )
    ]


# search ------------------------------------------------------------------------


def format_search(result: ToolResult) -> list[CommandMessage]:
    parsed = _parse_output_json(result.output_text)
    opaque = _opaque(result)
    args = result.arguments
    if not isinstance(args, dict):
        args = field_of(parsed, "arguments") if isinstance(parsed, dict) else None
    if opaque is not None and not isinstance(args, dict):
        command = f"grep {opaque}"
    else:
        args = args or {}
        parts = [f'grep "{args.get("pattern") or ""}"', f'"{args.get("path") or "."}"']
        if args.get("case_sensitive"):
            parts.append("--case-sensitive")
        if args.get("file_pattern"):
            parts.append(f'--include "{args["file_pattern"]}"')
        if args.get("exclude_pattern"):
            parts.append(f'--exclude "{args["exclude_pattern"]}"')
        command = " ".join(parts)

    output = field_of(parsed, "output") if isinstance(parsed, dict) else None
    return [
        base_message(
            result,
            0,
            command=command,
            output=_stringify(output) or result.output_text or NO_OUTPUT,
            success=True,
        )
    ]


# apply_patch -------------------------------------------------------------------


def format_apply_patch(result: ToolResult) -> list[CommandMessage]:
    parsed = _parse_output_json(result.output_text)
    entries = field_of(parsed, "output") if isinstance(parsed, dict) else None
    args = result.arguments if isinstance(result.arguments, dict) else {}
    opaque = _opaque(result)

    def _command(entry: Any = None) -> str:
        if opaque is not None and not args:
            return f"apply_patch {opaque}"
        operation = args.get("type") or field_of(entry, "operation") or "unknown"
        path = args.get("path") or field_of(entry, "path") or "unknown"
        return f"apply_patch {operation} {path}"

    if not isinstance(entries, list) or not entries:
        return [
            base_message(
                result,
                0,
                command=_command(),
                output=result.output_text or NO_OUTPUT,
                success=False,
                status="failed",
            )
        ]

    messages = []
    for sub_index, entry in enumerate(entries):
        success = bool(field_of(entry, "success", False))
        messages.append(
            base_message(
                result,
                sub_index,
                command=_command(entry),
                output=_stringify(field_of(entry, "message") or field_of(entry, "error")) or NO_OUTPUT,
                success=success,
                status="completed" if success else "failed",
            )
        )
    return messages


# fallback ----------------------------------------------------------------------


def format_generic(result: ToolResult) -> list[CommandMessage]:
    args = result.arguments
    if args in (None, "", {}, []):
        command = result.tool_name
    elif isinstance(args, str):
        command = f"{result.tool_name} {args.strip()}"
    else:
        command = f"{result.tool_name} {json.dumps(args, ensure_ascii=False, default=str)}"
    return [base_message(result, 0, command=command, output=result.output_text or NO_OUTPUT, success=True)]


FORMATTERS: dict[str, Formatter] = {
    **{name: format_shell for name in SHELL_TOOLS},
    **{name: format_search for name in SEARCH_TOOLS},
    **{name: format_apply_patch for name in PATCH_TOOLS},
}


def formatter_for(tool_name: str) -> Formatter:
    return FORMATTERS.get(tool_name.strip().lower(), format_generic)


def register_formatter(tool_name: str, formatter: Formatter) -> None:
    FORMATTERS[tool_name.strip().lower()] = formatter


def approval_arguments_text(interruption: Any) -> str:
    """Human-readable text for the arguments of a call awaiting approval."""

    if field_of(interruption, "type") == "shell_call":
        commands = field_of(field_of(interruption, "action"), "commands")
        if isinstance(commands, (list, tuple)):
            return "\n".join(str(entry) for entry in commands)
        return "" if commands is None else str(commands)

    raw = field_of(interruption, "arguments")
    if raw is None:
        return ""
    value = normalize_tool_arguments(raw) if isinstance(raw, str) else raw
    if isinstance(value, str):
        return value
    command = command_from_args(value)
    if command:
        return command
    nested = field_of(value, "arguments")
    if isinstance(nested, str):
        return nested
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


__all__ = [
    "FORMATTERS",
    "NO_OUTPUT",
    "ToolResult",
    "approval_arguments_text",
    "base_message",
    "command_from_args",
    "format_apply_patch",
    "format_generic",
    "format_search",
    "format_shell",
    "formatter_for",
    "message_id",
    "output_text_of",
    "register_formatter",
]
