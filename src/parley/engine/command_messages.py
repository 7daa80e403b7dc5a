"""Turn raw tool call and tool result items into `CommandMessage` records."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from parley.engine.events import CommandMessage
from parley.engine.normalizer import field_of
from parley.engine.tool_args import (
    ArgumentDiagnostics,
    arguments_of,
    call_id_of,
    parse_json_arguments,
    raw_item_of,
)
from parley.engine.tool_formatters import ToolResult, formatter_for, output_text_of
from parley.log_utils import log_event

logger = logging.getLogger(__name__)

RESULT_ITEM_TYPES = frozenset({"tool_call_output_item"})
RESULT_RAW_TYPES = frozenset({"function_call_result", "function_call_output"})


def is_tool_result_item(item: Any) -> bool:
    raw = raw_item_of(item)
    return field_of(item, "type") in RESULT_ITEM_TYPES or field_of(raw, "type") in RESULT_RAW_TYPES


def is_tool_call_item(item: Any) -> bool:
    return field_of(raw_item_of(item), "type") == "function_call"


class CommandMessageExtractor:
    """Stateful extractor owned by one conversation session.

    It remembers which call ids the approval flow answered with a synthetic
    rejection and which call ids already had malformed arguments reported.
    """

    def __init__(self) -> None:
        self._rejected_call_ids: set[str] = set()
        self.diagnostics = ArgumentDiagnostics()

    def mark_approval_rejection(self, call_id: str | None) -> None:
        if call_id:
            self._rejected_call_ids.add(str(call_id))

    def is_approval_rejection(self, call_id: str | None) -> bool:
        return bool(call_id) and str(call_id) in self._rejected_call_ids

    def clear_approval_rejections(self) -> None:
        self._rejected_call_ids.clear()

    def extract(
        self,
        items: Iterable[Any] | None,
        *,
        emitted_ids: set[str] | None = None,
        arguments_by_id: Mapping[str, Any] | None = None,
        include_rejections: bool = False,
    ) -> list[CommandMessage]:
        """Render every tool result in `items`.

        Messages whose id is in `emitted_ids`, and synthetic approval
        rejections unless `include_rejections` is set, are left out.
        """

        batch = [item for item in (items or []) if item is not None]
        calls_by_id: dict[str, Any] = {}
        for item in batch:
            if is_tool_call_item(item):
                call_id = call_id_of(item)
                if call_id:
                    calls_by_id[call_id] = item

        messages: list[CommandMessage] = []
        for index, item in enumerate(batch):
            if not is_tool_result_item(item):
                continue
            result = self._resolve(item, index, calls_by_id, arguments_by_id or {})
            if result is None:
                continue
            for message in formatter_for(result.tool_name)(result):
                if emitted_ids is not None and message.id in emitted_ids:
                    continue
                if message.is_approval_rejection and not include_rejections:
                    continue
                messages.append(message)
        return messages

    def _resolve(
        self,
        item: Any,
        index: int,
        calls_by_id: Mapping[str, Any],
        arguments_by_id: Mapping[str, Any],
    ) -> ToolResult | None:
        raw = raw_item_of(item)
        call_ids = [
            str(value)
            for value in (
                field_of(raw, "callId"),
                field_of(raw, "call_id"),
                field_of(raw, "tool_call_id"),
                field_of(raw, "toolCallId"),
                field_of(raw, "id"),
                field_of(item, "callId"),
                field_of(item, "id"),
            )
            if value
        ]
        call_id = call_id_of(item)
        matching_call = next((calls_by_id[cid] for cid in call_ids if cid in calls_by_id), None)

        tool_name = field_of(raw, "name") or field_of(item, "name")
        if not tool_name and matching_call is not None:
            tool_name = field_of(raw_item_of(matching_call), "name")
        if not tool_name:
            log_event(logger, "command_message.skipped", level=logging.DEBUG, reason="missing_tool_name", call_id=call_id)
            return None

        raw_args = arguments_of(item)
        if not raw_args and matching_call is not None:
            raw_args = arguments_of(matching_call)
        if not raw_args:
            raw_args = next((arguments_by_id[cid] for cid in call_ids if arguments_by_id.get(cid)), None)

        arguments, error = parse_json_arguments(raw_args)
        if error is not None:
            self.diagnostics.report(call_id, str(tool_name), raw_args, error)

        rejected = bool(
            field_of(raw, "is_approval_rejection")
            or field_of(item, "is_approval_rejection")
            or any(self.is_approval_rejection(cid) for cid in call_ids)
        )
        return ToolResult(
            item=item,
            index=index,
            tool_name=str(tool_name),
            call_id=call_id,
            arguments=arguments,
            output_text=output_text_of(item),
            is_approval_rejection=rejected,
        )


__all__ = [
    "CommandMessageExtractor",
    "is_tool_call_item",
    "is_tool_result_item",
]
