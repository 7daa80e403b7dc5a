from __future__ import annotations

import pytest

from parley.engine.approval import (
    ApprovalContext,
    ApprovalState,
    build_rejection_interceptor,
    rejection_message,
    superseded_message,
)


def _context(call_id: str | None = "call_1", name: str = "shell") -> ApprovalContext:
    interruption = {"type": "function_call", "name": name, "arguments": "{}"}
    if call_id:
        interruption["callId"] = call_id
    return ApprovalContext(state=object(), interruption=interruption)


def test_messages() -> None:
    assert rejection_message() == "Tool execution was not approved."
    assert rejection_message("bad idea") == "Tool execution was not approved. User's reason: bad idea"
    assert superseded_message("do X instead") == (
        "Tool execution was not approved. User provided new input instead: do X instead"
    )


def test_state_transitions() -> None:
    state = ApprovalState()
    context = _context()
    assert state.phase == "idle"
    assert state.abort_pending() is False

    state.set_pending(context)
    assert state.phase == "pending"
    assert state.get_pending() is context

    assert state.abort_pending() is True
    assert state.phase == "aborted"
    assert state.get_pending() is None

    assert state.consume_aborted() is context
    assert state.consume_aborted() is None
    assert state.phase == "idle"


def test_set_pending_replaces_aborted() -> None:
    state = ApprovalState()
    state.set_pending(_context("a"))
    state.abort_pending()

    newer = _context("b")
    state.set_pending(newer)

    assert state.get_aborted() is None
    assert state.get_pending() is newer


def test_reset_removes_interceptors() -> None:
    removed: list[str] = []
    state = ApprovalState()
    context = _context()
    context.remove_interceptor = lambda: removed.append("x")
    state.set_pending(context)

    state.reset()

    assert removed == ["x"]
    assert state.phase == "idle"


@pytest.mark.asyncio
async def test_interceptor_fires_once_for_matching_call() -> None:
    matched: list[str | None] = []
    interceptor = build_rejection_interceptor(_context(), "no", on_match=matched.append)

    assert await interceptor("other_tool", {}, "call_1") is None
    assert await interceptor("shell", {}, "call_2") is None
    assert await interceptor("shell", {"command": "ls"}, "call_1") == "no"
    assert await interceptor("shell", {"command": "ls"}, "call_1") is None
    assert matched == ["call_1"]


@pytest.mark.asyncio
async def test_interceptor_matches_by_name_when_call_id_unknown() -> None:
    matched: list[str | None] = []
    interceptor = build_rejection_interceptor(_context(call_id=None), "no", on_match=matched.append)

    assert await interceptor("shell", {}, "runtime-id") == "no"
    assert matched == ["runtime-id"]
