from __future__ import annotations

import pytest
from pydantic_ai import (
    ModelRequest,
    ModelResponse,
    RetryPromptPart,
    TextPart,
    ToolCallPart,
    ToolReturnPart,
    UserPromptPart,
)
from pydantic_ai.models.test import TestModel

from parley import ConversationSession
from parley.engine.events import ApprovalResponse, TurnResponse
from parley.providers.pydantic_runtime import (
    ApprovalContinuation,
    PydanticAgentRuntime,
    PydanticRunStream,
    create_agent,
    is_unknown_tool_retry,
    items_to_messages,
    messages_to_items,
)


def _approval_runtime(ran: list[str]) -> PydanticAgentRuntime:
    def run_command(command: str) -> str:
        """Run a shell command in the workspace."""
        ran.append(command)
        return f"exit 0\nran {command}"

    model = TestModel(call_tools=["run_command"], custom_output_text="all done")
    return PydanticAgentRuntime(create_agent(model, approval_tools=[run_command], name="Coder"))


def test_items_round_trip_into_messages() -> None:
    items = [
        {"role": "user", "type": "message", "content": "hi"},
        {"type": "function_call", "callId": "c1", "name": "shell", "arguments": '{"command": "ls"}'},
        {"type": "function_call_result", "callId": "c1", "name": "shell", "output": "a.py"},
        {"role": "assistant", "type": "message", "content": [{"type": "output_text", "text": "done"}]},
        {"role": "user", "type": "message", "content": "next"},
    ]

    prompt, messages = items_to_messages(items)

    assert prompt == "next"
    assert [type(m) for m in messages] == [ModelRequest, ModelResponse, ModelRequest, ModelResponse]
    assert isinstance(messages[0].parts[0], UserPromptPart)
    assert isinstance(messages[1].parts[0], ToolCallPart)
    assert isinstance(messages[2].parts[0], ToolReturnPart)
    assert isinstance(messages[3].parts[0], TextPart)
    assert messages_to_items(messages) == [
        {"role": "user", "type": "message", "content": "hi"},
        {"type": "function_call", "callId": "c1", "name": "shell", "arguments": '{"command": "ls"}'},
        {"type": "function_call_result", "callId": "c1", "name": "shell", "output": "a.py"},
        {"role": "assistant", "type": "message", "content": [{"type": "output_text", "text": "done"}]},
    ]


@pytest.mark.asyncio
async def test_plain_turn_through_session() -> None:
    runtime = PydanticAgentRuntime(create_agent(TestModel(call_tools=[], custom_output_text="hello there")))
    session = ConversationSession(runtime)

    response = await session.send_message("hi")

    assert isinstance(response, TurnResponse)
    assert response.final_text == "hello there"
    assert response.usage is not None
    assert session.previous_response_id is not None
    assert [item["role"] for item in session.store.get_history()] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_approval_tool_pauses_and_runs_after_approval() -> None:
    ran: list[str] = []
    session = ConversationSession(_approval_runtime(ran))

    outcome = await session.send_message("run something")

    assert isinstance(outcome, ApprovalResponse)
    assert outcome.approval.tool_name == "run_command"
    assert outcome.approval.agent_name == "Coder"
    assert ran == []

    response = await session.handle_approval_decision("y")

    assert isinstance(response, TurnResponse)
    assert response.final_text == "all done"
    assert len(ran) == 1


@pytest.mark.asyncio
async def test_rejected_tool_never_runs() -> None:
    ran: list[str] = []
    runtime = _approval_runtime(ran)
    session = ConversationSession(runtime)
    await session.send_message("run something")

    response = await session.handle_approval_decision("n", "bad idea")

    assert isinstance(response, TurnResponse)
    assert response.final_text == "all done"
    assert ran == []
    assert runtime.interceptor_count == 0
    assert all(not message.is_approval_rejection for message in response.command_messages)


@pytest.mark.asyncio
async def test_continue_rejects_foreign_state() -> None:
    runtime = PydanticAgentRuntime(create_agent(TestModel()))

    with pytest.raises(TypeError):
        await runtime.continue_run_stream(object())


def test_continuation_requires_call_id() -> None:
    continuation = ApprovalContinuation(requests=None, messages=[], response_id="r")  # type: ignore[arg-type]

    continuation.approve({"callId": "c1"})
    continuation.reject({"callId": "c2"})

    assert continuation.decisions == {"c1": True, "c2": False}
    with pytest.raises(ValueError):
        continuation.approve({"name": "shell"})


def test_settings_mapping() -> None:
    runtime = PydanticAgentRuntime(create_agent(TestModel()))

    runtime.set_temperature(0.4)
    runtime.set_reasoning_effort("high")
    assert runtime.model_settings == {"temperature": 0.4, "openai_reasoning_effort": "high"}

    runtime.set_temperature(None)
    runtime.set_reasoning_effort("default")
    assert runtime.model_settings == {}
    assert runtime.get_provider() == "pydantic-ai"


def test_abort_cancels_active_streams() -> None:
    runtime = PydanticAgentRuntime(create_agent(TestModel()))
    stream = PydanticRunStream(runtime, prompt="x", history=[])
    runtime._active.add(stream)

    runtime.abort()

    assert stream.cancelled


def test_interceptors_can_be_removed() -> None:
    runtime = PydanticAgentRuntime(create_agent(TestModel()))

    async def _interceptor(name, params, call_id):
        return None

    remove = runtime.add_tool_interceptor(_interceptor)
    assert runtime.interceptor_count == 1
    remove()
    remove()
    assert runtime.interceptor_count == 0


def test_calls_to_unknown_tools_are_left_out_of_new_items() -> None:
    retry = RetryPromptPart(
        content="Unknown tool name: 'ghost'. Available tools: 'run_command'",
        tool_name="ghost",
        tool_call_id="c9",
    )
    messages = [
        ModelRequest(parts=[UserPromptPart(content="go")]),
        ModelResponse(parts=[ToolCallPart(tool_name="ghost", args="{}", tool_call_id="c9")]),
        ModelRequest(parts=[retry]),
        ModelResponse(parts=[TextPart(content="sorry")]),
    ]

    assert is_unknown_tool_retry(retry)
    assert [item.get("type") for item in messages_to_items(messages)] == [
        "message",
        "function_call",
        "function_call_result",
        "message",
    ]
    assert messages_to_items(messages, skip_unknown_tools=True) == [
        {"role": "user", "type": "message", "content": "go"},
        {"role": "assistant", "type": "message", "content": [{"type": "output_text", "text": "sorry"}]},
    ]


def test_runtime_reports_the_model_provider() -> None:
    model = TestModel()
    model.provider_id = "openrouter"  # type: ignore[attr-defined]
    runtime = PydanticAgentRuntime(create_agent(model))

    assert runtime.get_provider() == "openrouter"
    runtime.set_provider("openai")
    assert runtime.get_provider() == "openai"
