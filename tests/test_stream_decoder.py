from __future__ import annotations

import json

import allure
import pytest

from agent_conductor.stream.decoder import StreamDecoder, format_tool_call
from agent_conductor.stream.events import (
    DecodeErrorEvent,
    FinalResultEvent,
    InitEvent,
    TextDeltaEvent,
    ToolCallStartEvent,
    ToolResultEvent,
)

pytestmark = [
    allure.epic("Agent Streaming"),
    allure.feature("Stream JSON Decoder"),
]


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _line(payload: dict) -> str:
    return json.dumps(payload) + "\n"


def _tool_use(call_id: str, name: str = "Read", **arguments) -> str:
    return _line(
        {
            "type": "assistant",
            "message": {
                "content": [{"type": "tool_use", "id": call_id, "name": name, "input": arguments}],
            },
        },
    )


def _tool_result(call_id: str, content: str = "ok", is_error: bool = False) -> str:
    return _line(
        {
            "type": "user",
            "message": {
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": call_id,
                        "content": content,
                        "is_error": is_error,
                    },
                ],
            },
        },
    )


def test_init_records_session_and_tools() -> None:
    decoder = StreamDecoder()

    events = decoder.feed(
        _line(
            {
                "type": "system",
                "subtype": "init",
                "session_id": "s-1",
                "tools": ["Read", "Bash"],
                "model": "sonnet",
            },
        ),
    )

    assert events == [InitEvent(session_id="s-1", tools=("Read", "Bash"), model="sonnet")]
    assert decoder.state.initialized is True
    assert decoder.state.session_id == "s-1"
    assert decoder.state.tools == ("Read", "Bash")


def test_tool_result_duration_is_measured_from_call_start() -> None:
    clock = FakeClock(10.0)
    decoder = StreamDecoder(clock=clock)

    started = decoder.feed(_tool_use("toolu_1", file_path="README.md"))
    clock.now = 10.25
    finished = decoder.feed(_tool_result("toolu_1", "file body"))

    assert isinstance(started[0], ToolCallStartEvent)
    assert started[0].arguments == {"file_path": "README.md"}
    assert finished == [
        ToolResultEvent(call_id="toolu_1", content="file body", is_error=False, duration_ms=250),
    ]
    assert decoder.state.in_flight == {}


def test_tool_result_without_known_start_has_no_duration() -> None:
    decoder = StreamDecoder(clock=FakeClock())

    events = decoder.feed(_tool_result("toolu_unknown", "late", is_error=True))

    assert events == [
        ToolResultEvent(call_id="toolu_unknown", content="late", is_error=True, duration_ms=None),
    ]


def test_interleaved_calls_pair_by_id() -> None:
    clock = FakeClock(0.0)
    decoder = StreamDecoder(clock=clock)

    decoder.feed(_tool_use("a"))
    clock.now = 1.0
    decoder.feed(_tool_use("b", name="Bash", command="ls"))
    clock.now = 1.5
    first = decoder.feed(_tool_result("a"))
    second = decoder.feed(_tool_result("b"))

    assert first[0].duration_ms == 1500
    assert second[0].duration_ms == 500


def test_bare_tool_use_result_string_goes_to_latest_open_call() -> None:
    decoder = StreamDecoder(clock=FakeClock())
    decoder.feed(_tool_use("a"))
    decoder.feed(_tool_use("b"))

    events = decoder.feed(_line({"type": "user", "tool_use_result": "Error: permission denied"}))

    assert len(events) == 1
    assert events[0].call_id == "b"
    assert events[0].is_error is True
    assert list(decoder.state.in_flight) == ["a"]


def test_malformed_json_yields_single_error_and_keeps_state() -> None:
    decoder = StreamDecoder(clock=FakeClock())
    decoder.feed(_tool_use("toolu_1"))
    before = dict(decoder.state.in_flight)

    events = decoder.feed('{"type": "assistant", "message": ')

    assert len(events) == 1
    assert isinstance(events[0], DecodeErrorEvent)
    assert events[0].message.startswith("Invalid JSON")
    assert decoder.state.in_flight == before


def test_wrong_shape_does_not_half_apply_tool_calls() -> None:
    decoder = StreamDecoder(clock=FakeClock())

    events = decoder.feed(
        _line(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "tool_use", "id": "ok", "name": "Read", "input": {}},
                        {"type": "tool_use", "id": "", "name": "Read", "input": {}},
                    ],
                },
            },
        ),
    )

    assert [type(event) for event in events] == [DecodeErrorEvent]
    assert decoder.state.in_flight == {}


@pytest.mark.parametrize(
    "raw",
    [
        "[" * 200_000 + "]" * 200_000,
        '{"type": "result", "x": ' + "1" * 5000 + "}",
        '{"type": "result", "total_cost_usd": ' + "9" * 400 + "}",
        '{"type": "result", "total_cost_usd": Infinity}',
    ],
    ids=["deep-nesting", "huge-integer", "cost-overflow", "cost-infinite"],
)
def test_hostile_lines_become_decode_errors_without_touching_state(raw: str) -> None:
    decoder = StreamDecoder(clock=FakeClock())
    decoder.feed(_tool_use("toolu_1"))
    before = dict(decoder.state.in_flight)

    events = decoder.feed(raw)

    assert [type(event) for event in events] == [DecodeErrorEvent]
    assert decoder.state.outcome is None
    assert decoder.state.finished is False
    assert decoder.state.in_flight == before


def test_non_object_line_is_decode_error() -> None:
    decoder = StreamDecoder()

    events = decoder.feed("[1, 2, 3]")

    assert len(events) == 1
    assert events[0].message == "Expected a JSON object"


def test_blank_and_unknown_lines_produce_nothing() -> None:
    decoder = StreamDecoder()

    assert decoder.feed("   \n") == []
    assert decoder.feed(_line({"type": "rate_limit", "value": 1})) == []


def test_text_and_partial_deltas() -> None:
    decoder = StreamDecoder()

    events = decoder.feed_block(
        _line({"type": "assistant", "message": {"content": [{"type": "text", "text": "Hi"}]}})
        + _line({"type": "stream_event", "event": {"delta": {"text": " there"}}}),
    )

    assert events == [TextDeltaEvent(text="Hi"), TextDeltaEvent(text=" there")]


def test_final_result_carries_usage_cost_and_denials() -> None:
    decoder = StreamDecoder()

    events = decoder.feed(
        _line(
            {
                "type": "result",
                "subtype": "success",
                "result": "done",
                "is_error": False,
                "usage": {"input_tokens": 12, "output_tokens": 8},
                "total_cost_usd": 0.0125,
                "permission_denials": [
                    {"tool_name": "Bash", "tool_input": {"command": "rm -rf /"}},
                ],
            },
        ),
    )

    assert len(events) == 1
    final = events[0]
    assert isinstance(final, FinalResultEvent)
    assert final.content == "done"
    assert final.is_error is False
    assert final.usage is not None
    assert final.usage.total_tokens == 20
    assert final.cost_usd == 0.0125
    assert final.permission_denials[0].tool_name == "Bash"
    assert decoder.state.outcome == "success"
    assert decoder.state.finished is True


def test_error_subtype_marks_result_failed() -> None:
    decoder = StreamDecoder()

    events = decoder.feed(_line({"type": "result", "subtype": "error_max_turns"}))

    assert events[0].is_error is True
    assert decoder.state.outcome == "error"


def test_reset_forgets_session_and_open_calls() -> None:
    decoder = StreamDecoder(clock=FakeClock())
    decoder.feed(_line({"type": "system", "subtype": "init", "session_id": "s"}))
    decoder.feed(_tool_use("toolu_1"))

    decoder.reset()

    assert decoder.state.session_id is None
    assert decoder.state.initialized is False
    assert decoder.state.in_flight == {}
    assert decoder.feed(_tool_result("toolu_1"))[0].duration_ms is None


def test_format_tool_call_shortens_arguments() -> None:
    bash = ToolCallStartEvent(
        call_id="1",
        name="Bash",
        arguments={"command": "x" * 80},
        started_at=0.0,
    )
    grep = ToolCallStartEvent(
        call_id="2",
        name="Grep",
        arguments={"pattern": "TODO", "path": "src"},
        started_at=0.0,
    )

    assert format_tool_call(bash) == "Bash: " + "x" * 47 + "..."
    assert format_tool_call(grep) == "Grep: TODO in src"
