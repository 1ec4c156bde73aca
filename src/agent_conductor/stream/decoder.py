"""Incremental decoder for stream-JSON agent output.

Agents launched with a streaming output format (for example
``claude -p --output-format stream-json --verbose``) write one JSON document
per line::

    {"type":"system","subtype":"init","session_id":"...","tools":[...]}
    {"type":"assistant","message":{"content":[{"type":"tool_use","id":"toolu_1",...}]}}
    {"type":"user","message":{"content":[{"type":"tool_result","tool_use_id":"toolu_1",...}]}}
    {"type":"result","subtype":"success","result":"...","usage":{...}}

``StreamDecoder`` is fed those lines one at a time and keeps the state needed
to pair tool results with their calls. Malformed input never raises: a line
that cannot be decoded yields one ``DecodeErrorEvent`` and leaves the decoder
state exactly as it was.
"""

from __future__ import annotations

import json
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

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
from agent_conductor.usage import TokenUsage

_ERROR_MARKERS = ("permission", "denied", "failed")


class _MalformedLineError(ValueError):
    """Raised internally when a JSON line does not match the expected shape."""


@dataclass(slots=True)
class DecoderState:
    """Mutable decoding state carried between lines."""

    initialized: bool = False
    session_id: str | None = None
    model: str | None = None
    tools: tuple[str, ...] = ()
    in_flight: dict[str, ToolCallStartEvent] = field(default_factory=dict)
    outcome: str | None = None

    @property
    def finished(self) -> bool:
        return self.outcome is not None


class StreamDecoder:
    """Turns stream-JSON lines into ``StreamEvent`` values."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.state = DecoderState()

    def reset(self) -> None:
        """Forget the session and every in-flight tool call."""

        self.state = DecoderState()

    def feed(self, line: str) -> list[StreamEvent]:
        """Decode one line. Blank lines produce no events."""

        stripped = line.strip()
        if not stripped:
            return []
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError as error:
            return [DecodeErrorEvent(raw_line=line, message=f"Invalid JSON: {error.msg}")]
        except (ValueError, RecursionError) as error:
            # oversized integers and pathological nesting
            return [DecodeErrorEvent(raw_line=line, message=f"Invalid JSON: {error}")]
        if not isinstance(payload, dict):
            return [DecodeErrorEvent(raw_line=line, message="Expected a JSON object")]
        try:
            return self._dispatch(payload)
        except _MalformedLineError as error:
            return [DecodeErrorEvent(raw_line=line, message=str(error))]

    def feed_block(self, text: str) -> list[StreamEvent]:
        """Decode a multi-line block, splitting on line breaks."""

        events: list[StreamEvent] = []
        for line in text.splitlines():
            events.extend(self.feed(line))
        return events

    def _dispatch(self, payload: dict[str, Any]) -> list[StreamEvent]:
        message_type = payload.get("type")
        if message_type == "system":
            return self._on_system(payload)
        if message_type == "assistant":
            return self._on_assistant(payload)
        if message_type == "user":
            return self._on_user(payload)
        if message_type == "result":
            return [self._on_result(payload)]
        if message_type == "stream_event":
            return _on_stream_event(payload)
        if not isinstance(message_type, str):
            raise _MalformedLineError("Missing message type")
        return []

    def _on_system(self, payload: dict[str, Any]) -> list[StreamEvent]:
        subtype = payload.get("subtype", "init")
        if subtype != "init":
            return []
        session_id = payload.get("session_id")
        if not isinstance(session_id, str):
            raise _MalformedLineError("system.session_id must be a string")
        tools = _string_tuple(payload.get("tools", []), "system.tools")
        model = payload.get("model")
        if model is not None and not isinstance(model, str):
            raise _MalformedLineError("system.model must be a string when provided")

        self.state.initialized = True
        self.state.session_id = session_id
        self.state.tools = tools
        self.state.model = model
        return [InitEvent(session_id=session_id, tools=tools, model=model)]

    def _on_assistant(self, payload: dict[str, Any]) -> list[StreamEvent]:
        content = _message_content(payload, "assistant")
        now = self._clock()
        events: list[StreamEvent] = []
        for item in content:
            if not isinstance(item, dict):
                raise _MalformedLineError("assistant content item must be an object")
            item_type = item.get("type")
            if item_type == "text":
                text = item.get("text")
                if not isinstance(text, str):
                    raise _MalformedLineError("assistant text must be a string")
                events.append(TextDeltaEvent(text=text))
            elif item_type == "tool_use":
                call_id = item.get("id")
                name = item.get("name")
                arguments = item.get("input", {})
                if not isinstance(call_id, str) or not call_id:
                    raise _MalformedLineError("tool_use.id must be a non-empty string")
                if not isinstance(name, str):
                    raise _MalformedLineError("tool_use.name must be a string")
                if not isinstance(arguments, dict):
                    raise _MalformedLineError("tool_use.input must be an object")
                events.append(
                    ToolCallStartEvent(
                        call_id=call_id,
                        name=name,
                        arguments=arguments,
                        started_at=now,
                    ),
                )

        for event in events:
            if isinstance(event, ToolCallStartEvent):
                self.state.in_flight[event.call_id] = event
        return events

    def _on_user(self, payload: dict[str, Any]) -> list[StreamEvent]:
        results: list[tuple[str, str, bool]] = []
        message = payload.get("message")
        if message is not None:
            for item in _message_content(payload, "user"):
                if not isinstance(item, dict):
                    raise _MalformedLineError("user content item must be an object")
                if item.get("type") != "tool_result":
                    continue
                call_id = item.get("tool_use_id")
                if not isinstance(call_id, str) or not call_id:
                    raise _MalformedLineError("tool_result.tool_use_id must be a non-empty string")
                is_error = item.get("is_error", False)
                if not isinstance(is_error, bool):
                    raise _MalformedLineError("tool_result.is_error must be a boolean")
                results.append((call_id, _tool_result_text(item.get("content", "")), is_error))

        loose_result = payload.get("tool_use_result")
        if not results and isinstance(loose_result, str) and self.state.in_flight:
            # Bare result string: attribute it to the most recent open call.
            call_id = next(reversed(self.state.in_flight))
            is_error = loose_result.startswith("Error:") or any(
                marker in loose_result for marker in _ERROR_MARKERS
            )
            results.append((call_id, loose_result, is_error))

        now = self._clock()
        events: list[StreamEvent] = []
        for call_id, content, is_error in results:
            started = self.state.in_flight.pop(call_id, None)
            duration_ms = (
                int(round((now - started.started_at) * 1000)) if started is not None else None
            )
            events.append(
                ToolResultEvent(
                    call_id=call_id,
                    content=content,
                    is_error=is_error,
                    duration_ms=duration_ms,
                ),
            )
        return events

    def _on_result(self, payload: dict[str, Any]) -> FinalResultEvent:
        is_error = payload.get("is_error", False)
        if not isinstance(is_error, bool):
            raise _MalformedLineError("result.is_error must be a boolean")
        subtype = payload.get("subtype") or ("error" if is_error else "success")
        if not isinstance(subtype, str):
            raise _MalformedLineError("result.subtype must be a string")
        content = payload.get("result", "")
        if content is None:
            content = ""
        if not isinstance(content, str):
            raise _MalformedLineError("result.result must be a string")
        usage_raw = payload.get("usage")
        if usage_raw is not None and not isinstance(usage_raw, dict):
            raise _MalformedLineError("result.usage must be an object")
        cost_usd = _cost(payload.get("total_cost_usd", payload.get("cost_usd")))
        denials = _permission_denials(payload.get("permission_denials", []))

        failed = is_error or subtype.startswith("error")
        self.state.outcome = "error" if failed else "success"
        return FinalResultEvent(
            content=content,
            is_error=failed,
            subtype=subtype,
            usage=TokenUsage.from_mapping(usage_raw) if usage_raw is not None else None,
            cost_usd=cost_usd,
            permission_denials=denials,
        )


def _on_stream_event(payload: dict[str, Any]) -> list[StreamEvent]:
    event = payload.get("event")
    if not isinstance(event, dict):
        return []
    delta = event.get("delta")
    if not isinstance(delta, dict):
        return []
    text = delta.get("text")
    if not isinstance(text, str) or not text:
        return []
    return [TextDeltaEvent(text=text)]


def _message_content(payload: dict[str, Any], label: str) -> list[Any]:
    message = payload.get("message")
    if not isinstance(message, dict):
        raise _MalformedLineError(f"{label}.message must be an object")
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if not isinstance(content, list):
        raise _MalformedLineError(f"{label}.message.content must be an array")
    return content


def _tool_result_text(raw: object) -> str:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, list):
        parts: list[str] = []
        for part in raw:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
            elif isinstance(part, str):
                parts.append(part)
        return "\n".join(parts)
    if raw is None:
        return ""
    raise _MalformedLineError("tool_result.content must be a string or an array")


def _cost(raw: object) -> float | None:
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        raise _MalformedLineError("result.total_cost_usd must be a number")
    try:
        cost = float(raw)
    except OverflowError as error:
        raise _MalformedLineError("result.total_cost_usd is out of range") from error
    if not math.isfinite(cost):
        raise _MalformedLineError("result.total_cost_usd is out of range")
    return cost


def _string_tuple(raw: object, label: str) -> tuple[str, ...]:
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise _MalformedLineError(f"{label} must be an array of strings")
    return tuple(raw)


def _permission_denials(raw: object) -> tuple[PermissionDenial, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise _MalformedLineError("result.permission_denials must be an array")
    denials: list[PermissionDenial] = []
    for item in raw:
        if not isinstance(item, dict) or not isinstance(item.get("tool_name"), str):
            raise _MalformedLineError("permission denial must carry tool_name")
        tool_input = item.get("tool_input", {})
        denials.append(
            PermissionDenial(
                tool_name=item["tool_name"],
                tool_input=tool_input if isinstance(tool_input, dict) else {},
            ),
        )
    return tuple(denials)


def format_tool_call(event: ToolCallStartEvent) -> str:
    """Render a tool call as one short human-readable line."""

    arguments = event.arguments
    name = event.name
    if name in {"Read", "Edit"}:
        return f"{name}: {arguments.get('file_path', '')}"
    if name == "Write":
        content = arguments.get("content")
        size = len(content) if isinstance(content, str) else 0
        return f"Write: {arguments.get('file_path', '')} ({size} chars)"
    if name == "Bash":
        return f"Bash: {_shorten(arguments.get('command'), 50)}"
    if name in {"Glob", "Grep"}:
        pattern = _shorten(arguments.get("pattern"), 30 if name == "Grep" else 80)
        path = arguments.get("path")
        return f"{name}: {pattern}" + (f" in {path}" if path else "")
    if name == "WebFetch":
        return f"WebFetch: {arguments.get('url', '')}"
    if name == "WebSearch":
        return f"WebSearch: {_shorten(arguments.get('query'), 40)}"
    if name == "Task":
        return f"Task: {_shorten(arguments.get('prompt'), 40)}"
    return f"{name}: {json.dumps(arguments, ensure_ascii=False)[:50]}..."


def _shorten(value: object, max_len: int) -> str:
    if not isinstance(value, str):
        return ""
    return value if len(value) <= max_len else value[: max_len - 3] + "..."
