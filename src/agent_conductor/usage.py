"""Token usage model and extraction helpers for CLI agent output."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

_INPUT_KEYS = ("input_tokens", "prompt_tokens", "inputTokens", "promptTokenCount")
_OUTPUT_KEYS = ("output_tokens", "completion_tokens", "outputTokens", "candidatesTokenCount")
_TOTAL_KEYS = ("total_tokens", "totalTokens", "totalTokenCount")

_NUMBER = r"([\d,]+)"
_TEXT_PATTERNS: dict[str, re.Pattern[str]] = {
    "input": re.compile(rf"\b(?:input|prompt)[_ ]tokens?\s*[:=]\s*{_NUMBER}", re.IGNORECASE),
    "output": re.compile(
        rf"\b(?:output|completion)[_ ]tokens?\s*[:=]\s*{_NUMBER}",
        re.IGNORECASE,
    ),
    "total": re.compile(rf"\btotal[_ ]tokens?\s*[:=]\s*{_NUMBER}", re.IGNORECASE),
}
# codex prints "tokens used" followed by the count on the next line
_CODEX_FOOTER = re.compile(rf"tokens used\s*[\r\n ]+\s*{_NUMBER}", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class TokenUsage:
    """Token counts reported (or estimated) for one agent invocation."""

    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None

    @classmethod
    def from_mapping(cls, raw: dict[str, Any]) -> TokenUsage:
        """Build usage from a provider payload such as ``{"input_tokens": 10, ...}``."""

        return cls.from_counts(
            _first_int(raw, _INPUT_KEYS),
            _first_int(raw, _OUTPUT_KEYS),
            _first_int(raw, _TOTAL_KEYS),
        )

    @classmethod
    def from_counts(
        cls,
        input_tokens: int | None,
        output_tokens: int | None,
        total_tokens: int | None = None,
    ) -> TokenUsage:
        if total_tokens is None and (input_tokens is not None or output_tokens is not None):
            total_tokens = (input_tokens or 0) + (output_tokens or 0)
        return cls(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total_tokens)

    @property
    def is_empty(self) -> bool:
        return self.input_tokens is None and self.output_tokens is None and self.total_tokens is None


@dataclass(slots=True)
class UsageExtraction:
    """Usage found in agent output, with where it came from.

    ``usage_status`` is ``reported`` when the agent printed a total,
    ``estimated`` when the total was summed from parts and ``unknown`` when
    nothing was found.
    """

    usage: TokenUsage | None
    usage_status: str
    usage_source: str


def extract_usage(*, agent: str, stdout: str, stderr: str) -> UsageExtraction:
    """Extract token usage from JSON usage objects or textual counters."""

    for source, text in (("agent_stdout", stdout), ("agent_stderr", stderr)):
        payload = _find_usage_object(text)
        if payload is not None:
            usage = TokenUsage.from_mapping(payload)
            if not usage.is_empty:
                reported = _first_int(payload, _TOTAL_KEYS) is not None
                return UsageExtraction(usage, _status(reported), source)

    return _extract_textual(agent=agent, stdout=stdout, stderr=stderr)


def _find_usage_object(text: str) -> dict[str, Any] | None:
    """Return the last ``usage`` object found on a JSON line of ``text``."""

    found: dict[str, Any] | None = None
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped.startswith("{"):
            continue
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict):
            continue
        usage = payload.get("usage", payload.get("usageMetadata"))
        if isinstance(usage, dict):
            found = usage
    return found


def _extract_textual(*, agent: str, stdout: str, stderr: str) -> UsageExtraction:
    counts: dict[str, int] = {}
    sources: list[str] = []

    for source, text in (("agent_stderr", stderr), ("agent_stdout", stdout)):
        matched = False
        for key, pattern in _TEXT_PATTERNS.items():
            if key in counts:
                continue
            value = _search_int(pattern, text)
            if value is not None:
                counts[key] = value
                matched = True
        if "total" not in counts and agent == "codex":
            value = _search_int(_CODEX_FOOTER, text)
            if value is not None:
                counts["total"] = value
                matched = True
        if matched:
            sources.append(source)

    if not counts:
        return UsageExtraction(usage=None, usage_status="unknown", usage_source="none")

    usage = TokenUsage.from_counts(counts.get("input"), counts.get("output"), counts.get("total"))
    return UsageExtraction(
        usage,
        _status("total" in counts),
        "both" if len(sources) > 1 else sources[0],
    )


def _status(total_reported: bool) -> str:
    return "reported" if total_reported else "estimated"


def _search_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    digits = match.group(1).replace(",", "")
    return int(digits) if digits.isdigit() else None


def _first_int(raw: dict[str, Any], keys: tuple[str, ...]) -> int | None:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
    return None
