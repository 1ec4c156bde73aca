"""Decoding of streamed agent output into typed events."""

from agent_conductor.stream.decoder import DecoderState, StreamDecoder, format_tool_call
from agent_conductor.stream.events import (
    DecodeErrorEvent,
    FinalResultEvent,
    InitEvent,
    PermissionDenial,
    StreamEvent,
    TextDeltaEvent,
    ToolCallStartEvent,
    ToolResultEvent,
)

__all__ = [
    "DecodeErrorEvent",
    "DecoderState",
    "FinalResultEvent",
    "InitEvent",
    "PermissionDenial",
    "StreamDecoder",
    "StreamEvent",
    "TextDeltaEvent",
    "ToolCallStartEvent",
    "ToolResultEvent",
    "format_tool_call",
]
