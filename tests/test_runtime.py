from __future__ import annotations

from pydantic_ai.exceptions import ModelRetry, UnexpectedModelBehavior

from parley.engine.runtime import (
    SupportsInterceptors,
    hallucinated_tool_name,
    is_hallucinated_tool_error,
    runtime_provider,
)
from tests.utils import FakeRuntime, InterceptingRuntime


def test_unknown_tool_errors_are_detected() -> None:
    assert is_hallucinated_tool_error(UnexpectedModelBehavior("Unknown tool name: 'ghost'. No tools available."))
    assert is_hallucinated_tool_error(UnexpectedModelBehavior("Tool ghost not found in agent Coder"))
    assert hallucinated_tool_name(UnexpectedModelBehavior("Tool ghost not found in agent Coder")) == "ghost"


def test_exhausted_retry_is_detected_through_its_cause() -> None:
    error = UnexpectedModelBehavior("Tool 'ghost' exceeded max retries count of 1")
    error.__cause__ = ModelRetry("Unknown tool name: 'ghost'. Available tools: 'shell'")

    assert is_hallucinated_tool_error(error)
    assert hallucinated_tool_name(error) == "ghost"


def test_other_errors_are_not_hallucinations() -> None:
    assert not is_hallucinated_tool_error(RuntimeError("Unknown tool name: 'ghost'"))
    assert not is_hallucinated_tool_error(UnexpectedModelBehavior("Received empty model response"))
    assert hallucinated_tool_name(RuntimeError("boom")) == "unknown"


def test_runtime_provider_defaults_to_openai() -> None:
    class Bare:
        pass

    class Named:
        def get_provider(self) -> str:
            return "openrouter"

    assert runtime_provider(Bare()) == "openai"
    assert runtime_provider(Named()) == "openrouter"


def test_interceptor_support_is_structural() -> None:
    assert isinstance(InterceptingRuntime(), SupportsInterceptors)
    assert not isinstance(FakeRuntime(), SupportsInterceptors)
