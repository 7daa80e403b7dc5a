from __future__ import annotations

from types import SimpleNamespace

from parley.engine.usage import (
    extract_stream_usage,
    extract_usage,
    format_footer_usage,
    normalize_usage,
)


def test_normalize_openai_style_usage() -> None:
    usage = normalize_usage(
        {
            "prompt_tokens": 100,
            "completion_tokens": 20,
            "completion_tokens_details": {"reasoning_tokens": 5},
        }
    )

    assert usage == {"prompt_tokens": 100, "completion_tokens": 20, "total_tokens": 120, "reasoning_tokens": 5}


def test_normalize_gemini_and_llama_shapes() -> None:
    gemini = normalize_usage({"promptTokenCount": 7, "candidatesTokenCount": 3, "totalTokenCount": 10})
    llama = normalize_usage({"prompt_n": 4, "cache_n": 6, "predicted_n": 2, "predicted_ms": 12.5})

    assert gemini == {"prompt_tokens": 7, "completion_tokens": 3, "total_tokens": 10}
    assert llama is not None
    assert llama["prompt_tokens"] == 10
    assert llama["completion_tokens"] == 2
    assert llama["completion_ms"] == 12.5


def test_normalize_resolves_callable_usage() -> None:
    usage = normalize_usage(lambda: SimpleNamespace(input_tokens=2, output_tokens=1))

    assert usage == {"prompt_tokens": 2, "completion_tokens": 1, "total_tokens": 3}


def test_normalize_rejects_non_numeric() -> None:
    assert normalize_usage({"prompt_tokens": "many"}) is None
    assert normalize_usage("12") is None
    assert normalize_usage(None) is None


def test_extract_usage_prefers_earlier_locations() -> None:
    event = {
        "usage": {"input_tokens": 5},
        "response": {"usage": {"input_tokens": 50, "output_tokens": 1}},
    }

    usage = extract_usage(event)

    assert usage is not None
    assert usage["prompt_tokens"] == 5
    assert usage["completion_tokens"] == 1


def test_stream_usage_falls_back_to_raw_responses() -> None:
    stream = SimpleNamespace(raw_responses=[{"usage": {"input_tokens": 1}}, {"usage": {"input_tokens": 9}}])

    assert extract_stream_usage(None, stream) == {"prompt_tokens": 9, "total_tokens": 9}


def test_footer_formatting() -> None:
    footer = format_footer_usage({"prompt_tokens": 1200.0, "completion_tokens": 80, "total_tokens": 1280})

    assert footer == "Tok: 1,200 in / 80 out / 1,280 total"
    assert format_footer_usage(None) == ""
