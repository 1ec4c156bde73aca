from __future__ import annotations

import allure

from agent_conductor.usage import TokenUsage, extract_usage

pytestmark = [
    allure.epic("LLM Runtime"),
    allure.feature("Token Usage"),
]


def test_structured_usage_from_stdout() -> None:
    extraction = extract_usage(
        agent="claude",
        stdout='{"usage": {"input_tokens": 120, "output_tokens": 30}}',
        stderr="",
    )

    assert extraction.usage == TokenUsage(input_tokens=120, output_tokens=30, total_tokens=150)
    assert extraction.usage_status == "estimated"
    assert extraction.usage_source == "agent_stdout"


def test_codex_tokens_used_footer_is_reported_total() -> None:
    extraction = extract_usage(agent="codex", stdout="answer", stderr="tokens used\n1,234\n")

    assert extraction.usage is not None
    assert extraction.usage.total_tokens == 1234
    assert extraction.usage_status == "reported"
    assert extraction.usage_source == "agent_stderr"


def test_textual_usage_across_both_streams() -> None:
    extraction = extract_usage(
        agent="gemini",
        stdout="output_tokens: 7",
        stderr="input tokens = 5",
    )

    assert extraction.usage == TokenUsage(input_tokens=5, output_tokens=7, total_tokens=12)
    assert extraction.usage_source == "both"


def test_missing_usage_is_unknown() -> None:
    extraction = extract_usage(agent="ollama", stdout="just text", stderr="")

    assert extraction.usage is None
    assert extraction.usage_status == "unknown"


def test_token_usage_from_mapping_ignores_non_integers() -> None:
    usage = TokenUsage.from_mapping({"prompt_tokens": 3.0, "completion_tokens": True})

    assert usage == TokenUsage(input_tokens=3, output_tokens=None, total_tokens=3)
