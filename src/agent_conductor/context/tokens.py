"""Token estimation and per-agent context limits."""

from __future__ import annotations

import math
from dataclasses import dataclass

CHARS_PER_TOKEN = 4
TRUNCATION_MARKER = "\n\n[...truncated]"


@dataclass(frozen=True, slots=True)
class TokenLimits:
    """Context window of one agent."""

    max_tokens: int


TOKEN_LIMITS: dict[str, TokenLimits] = {
    "claude": TokenLimits(max_tokens=200_000),
    "codex": TokenLimits(max_tokens=192_000),
    "gemini": TokenLimits(max_tokens=1_000_000),
    "ollama": TokenLimits(max_tokens=8_192),
    "mistral": TokenLimits(max_tokens=32_000),
}
DEFAULT_TOKEN_LIMITS = TokenLimits(max_tokens=32_000)


def estimate_tokens(text: str, chars_per_token: int = CHARS_PER_TOKEN) -> int:
    """Estimate token count with a fixed characters-per-token ratio."""

    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def get_token_limits(agent: str) -> TokenLimits:
    return TOKEN_LIMITS.get(agent.lower(), DEFAULT_TOKEN_LIMITS)


def truncate_to_tokens(
    text: str,
    max_tokens: int,
    *,
    chars_per_token: int = CHARS_PER_TOKEN,
    marker: str = TRUNCATION_MARKER,
) -> str:
    """Cut ``text`` so that text plus marker stays within ``max_tokens``."""

    if estimate_tokens(text, chars_per_token) <= max_tokens:
        return text
    target_chars = max(max_tokens * chars_per_token - len(marker), 0)
    return text[:target_chars] + marker
