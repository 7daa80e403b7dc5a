from __future__ import annotations

from parley.providers.openrouter_messages import (
    ChatRequest,
    apply_cache_hints,
    build_messages_from_request,
    build_wire_messages,
    convert_item_to_message,
    extract_function_tools,
    extract_model_settings,
    is_anthropic_model,
)


def _user(text: str) -> dict:
    return {"role": "user", "type": "message", "content": text}


def _call(call_id: str, command: str) -> dict:
    return {"type": "function_call", "callId": call_id, "name": "shell", "arguments": '{"command": "%s"}' % command}


def _result(call_id: str, output: object) -> dict:
    return {"type": "function_call_result", "callId": call_id, "name": "shell", "output": output}


def _markers(messages: list[dict]) -> list[str]:
    found = []
    for message in messages:
        content = message.get("content")
        if isinstance(content, list):
            found += [message["role"] for part in content if "cache_control" in part]
    return found


def test_plain_string_input_becomes_user_message() -> None:
    messages = build_wire_messages("hello", "openai/gpt-4.1", "be brief")

    assert messages == [{"role": "system", "content": "be brief"}, {"role": "user", "content": "hello"}]


def test_tool_calls_and_results_convert() -> None:
    messages = build_wire_messages([_user("run it"), _call("c1", "ls"), _result("c1", {"exit": 0})])

    assert messages[1] == {
        "role": "assistant",
        "content": None,
        "tool_calls": [
            {"id": "c1", "type": "function", "function": {"name": "shell", "arguments": '{"command": "ls"}'}}
        ],
    }
    assert messages[2] == {"role": "tool", "tool_call_id": "c1", "content": '{"exit": 0}'}


def test_consecutive_assistant_items_merge() -> None:
    text = {"role": "assistant", "type": "message", "content": [{"type": "output_text", "text": "Running both."}]}

    messages = build_wire_messages([_user("go"), text, _call("c1", "ls"), _call("c2", "pwd")])

    assert len(messages) == 2
    merged = messages[1]
    assert merged["content"] == "Running both."
    assert [call["id"] for call in merged["tool_calls"]] == ["c1", "c2"]


def test_consecutive_user_items_merge_with_newline() -> None:
    messages = build_wire_messages([_user("first"), _user("second")])

    assert messages == [{"role": "user", "content": "first\nsecond"}]


def test_reasoning_items_attach_to_next_assistant_message() -> None:
    detail = {"type": "reasoning.text", "text": "plan", "index": 0}
    history = [
        _user("q"),
        {"type": "reasoning", "providerData": detail},
        {"role": "assistant", "type": "message", "content": [{"type": "output_text", "text": "a"}]},
    ]

    messages = build_wire_messages(history)

    assert messages[-1]["reasoning_details"] == [detail]


def test_assistant_reasoning_fields_are_preserved() -> None:
    item = {
        "role": "assistant",
        "type": "message",
        "content": [{"type": "output_text", "text": "a"}],
        "reasoning": "because",
        "reasoning_details": [{"type": "reasoning.encrypted", "data": "xyz"}],
    }

    message = convert_item_to_message(item)

    assert message == {
        "role": "assistant",
        "content": "a",
        "reasoning": "because",
        "reasoning_details": [{"type": "reasoning.encrypted", "data": "xyz"}],
    }


def test_unknown_items_are_dropped() -> None:
    assert convert_item_to_message({"type": "web_search_call"}) is None
    assert convert_item_to_message(None) is None
    assert build_wire_messages([{"type": "web_search_call"}, _user("x")]) == [{"role": "user", "content": "x"}]


def test_anthropic_models_get_cache_markers() -> None:
    history = [_user("q1"), _call("c1", "ls"), _result("c1", "out"), _user("q2")]

    messages = build_wire_messages(history, "anthropic/claude-sonnet-4", "system prompt")

    assert is_anthropic_model("anthropic/claude-sonnet-4")
    assert messages[0]["content"][0]["cache_control"] == {"type": "ephemeral"}
    assert messages[1]["content"] == "q1"
    assert messages[-1]["content"] == [{"type": "text", "text": "q2", "cache_control": {"type": "ephemeral"}}]
    assert _markers(messages) == ["system", "tool", "user"]


def test_cache_hints_are_idempotent() -> None:
    messages = build_wire_messages([_user("q1"), _call("c1", "ls"), _result("c1", "out")], "claude-3-5-haiku")

    apply_cache_hints(messages)
    apply_cache_hints(messages)

    assert sorted(_markers(messages)) == ["tool", "user"]


def test_non_anthropic_models_have_no_markers() -> None:
    messages = build_messages_from_request(ChatRequest(input=[_user("q")], system_instructions="s"), "openai/gpt-4.1")

    assert _markers(messages) == []


def test_function_tools_and_settings() -> None:
    request = ChatRequest(
        input="x",
        tools=[
            {"type": "function", "name": "shell", "description": "Run", "parameters": {"type": "object"}},
            {"type": "hosted", "name": "web"},
        ],
    )

    tools = extract_function_tools(request)

    assert [tool["function"]["name"] for tool in tools] == ["shell"]
    assert extract_model_settings({"temperature": 0.2, "maxTokens": 100, "reasoning_effort": "default"}) == {
        "temperature": 0.2,
        "max_tokens": 100,
        "reasoning": {"effort": "medium"},
    }
    assert extract_model_settings({"reasoning_effort": "none"}) == {}
    assert extract_model_settings(None) == {}
