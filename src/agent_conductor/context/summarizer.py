"""Summarizer collaborator and local key-point extraction."""

from __future__ import annotations

import logging
import re
from typing import Protocol

from agent_conductor.agents.base import AgentAdapter, AgentRunOptions
from agent_conductor.context.tokens import estimate_tokens

logger = logging.getLogger(__name__)

_BULLET_RE = re.compile(r"^\s*(?:[-*+•]|\d+[.)])\s+(.+?)\s*$")
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")

SUMMARY_PROMPT = (
    "Summarize the following content in at most {target_tokens} tokens. "
    "Keep code identifiers, file names, decisions and open problems. "
    "Answer with the summary only.\n\n{text}"
)


class Summarizer(Protocol):
    """Produces a shorter rendition of a text."""

    async def summarize(self, text: str, target_tokens: int) -> str:
        """Return a summary of ``text`` aiming at ``target_tokens`` tokens."""


class AgentSummarizer:
    """Summarizer backed by an agent adapter."""

    def __init__(self, agent: AgentAdapter, *, model: str | None = None) -> None:
        self.agent = agent
        self.model = model

    async def summarize(self, text: str, target_tokens: int) -> str:
        if estimate_tokens(text) <= target_tokens:
            return text
        response = await self.agent.run(
            SUMMARY_PROMPT.format(target_tokens=target_tokens, text=text),
            AgentRunOptions(model=self.model),
        )
        if response.error is not None:
            raise RuntimeError(f"Summarizer agent {self.agent.name} failed: {response.error}")
        return response.content.strip()


def extract_key_points(text: str, limit: int = 8) -> list[str]:
    """Pick bullet lines, or leading sentences when the text has no bullets."""

    bullets = [
        match.group(1)
        for line in text.splitlines()
        if (match := _BULLET_RE.match(line)) is not None
    ]
    if bullets:
        return bullets[:limit]

    sentences = [
        sentence.strip()
        for sentence in _SENTENCE_RE.split(" ".join(text.split()))
        if sentence.strip()
    ]
    return sentences[:limit]


def format_key_points(points: list[str]) -> str:
    return "\n".join(f"- {point}" for point in points)
