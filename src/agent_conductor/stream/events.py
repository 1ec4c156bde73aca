"""Typed events emitted by the stream decoder."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from agent_conductor.usage import TokenUsage


@dataclass(frozen=True, slots=True)
class InitEvent:
    """Session initialization announced by the agent."""

    session_id: str
    tools: tuple[str, ...] = ()
    model: str | None = None
    kind: str = field(default="init", init=False)


@dataclass(frozen=True, slots=True)
class ToolCallStartEvent:
    """The agent started a tool call."""

    call_id: str
    name: str
    arguments: dict[str, Any]
    started_at: float
    kind: str = field(default="tool_call_start", init=False)


@dataclass(frozen=True, slots=True)
class ToolResultEvent:
    """A tool call finished.

    ``duration_ms`` is ``None`` when the call start was never observed.
    """

    call_id: str
    content: str
    is_error: bool
    duration_ms: int | None
    kind: str = field(default="tool_result", init=False)


@dataclass(frozen=True, slots=True)
class TextDeltaEvent:
    """A fragment of assistant text."""

    text: str
    kind: str = field(default="text_delta", init=False)


@dataclass(frozen=True, slots=True)
class PermissionDenial:
    """Tool invocation refused by the agent's permission layer."""

    tool_name: str
    tool_input: dict[str, Any]


@dataclass(frozen=True, slots=True)
class FinalResultEvent:
    """Terminal event of one agent exchange."""

    content: str
    is_error: bool
    subtype: str
    usage: TokenUsage | None = None
    cost_usd: float | None = None
    permission_denials: tuple[PermissionDenial, ...] = ()
    kind: str = field(default="final_result", init=False)


@dataclass(frozen=True, slots=True)
class DecodeErrorEvent:
    """A line that could not be decoded as a well-formed event."""

    raw_line: str
    message: str
    kind: str = field(default="decode_error", init=False)


StreamEvent = (
    InitEvent
    | ToolCallStartEvent
    | ToolResultEvent
    | TextDeltaEvent
    | FinalResultEvent
    | DecodeErrorEvent
)
