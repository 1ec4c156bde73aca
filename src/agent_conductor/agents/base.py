"""Agent adapter interface used by the execution engine."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from agent_conductor.stream.events import StreamEvent
from agent_conductor.usage import TokenUsage


@dataclass(slots=True)
class AgentRunOptions:
    """Per-invocation options passed to an agent adapter."""

    model: str | None = None
    timeout_seconds: float | None = None
    on_event: Callable[[StreamEvent], None] | None = None


@dataclass(slots=True)
class AgentResponse:
    """Outcome of one agent invocation.

    Adapters report failures through ``error`` rather than raising.
    """

    content: str
    model: str
    duration_ms: int
    usage: TokenUsage | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class AgentAdapter(Protocol):
    """Capability set every text-completion backend provides."""

    name: str

    async def run(self, prompt: str, options: AgentRunOptions | None = None) -> AgentResponse:
        """Send a prompt to the backend and wait for its answer."""

    async def is_available(self) -> bool:
        """Report whether the backend can be invoked right now."""


class AgentRunError(RuntimeError):
    """Agent invocation error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient
