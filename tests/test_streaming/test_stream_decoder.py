import json

import pytest

from script_agent.streaming import StreamDecoder, parse_stream_event
from script_agent.types import (
    ContentBlockDelta,
    MessageStart,
    MessageStop,
    StopReason,
    TextBlock,
    ToolUseBlock,
)

EVENTS = [
    {
        "type": "message_start",
        "message": {
            "id": "msg_01",
            "model": "claude-sonnet-4-20250514",
            "usage": {"input_tokens": 12, "output_tokens": 1},
        },
    },
    {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
    {"type": "ping"},
    {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hello "}},
    {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "wörld ✓"}},
    {"type": "content_block_stop", "index": 0},
    {
        "type": "content_block_start",
        "index": 1,
        "content_block": {"type": "tool_use", "id": "toolu_01", "name": "idascript", "input": {}},
    },
    {
        "type": "content_block_delta",
        "index": 1,
        "delta": {"type": "input_json_delta", "partial_json": '{"code": "pri'},
    },
    {
        "type": "content_block_delta",
        "index": 1,
        "delta": {"type": "input_json_delta", "partial_json": 'nt(1)"}'},
    },
    {"type": "content_block_stop", "index": 1},
    {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 42}},
    {"type": "message_stop"},
]


def sse_stream(events: list[dict]) -> bytes:
    parts = [f"event: {event['type']}\ndata: {json.dumps(event, ensure_ascii=False)}\n\n" for event in events]
    return "".join(parts).encode("utf-8")


def ndjson_stream(events: list[dict]) -> bytes:
    return "\n".join(json.dumps(event) for event in events).encode("utf-8")


def test_assembles_text_and_tool_use_from_sse():
    decoder = StreamDecoder()
    decoder.feed(sse_stream(EVENTS))

    assert decoder.is_complete
    assert not decoder.has_error
    message = decoder.response
    assert message is not None
    assert message.id == "msg_01"
    assert message.model == "claude-sonnet-4-20250514"
    assert message.stop_reason == StopReason.TOOL_USE
    assert message.content == [
        TextBlock(text="Hello wörld ✓"),
        ToolUseBlock(id="toolu_01", name="idascript", input={"code": "print(1)"}),
    ]
    assert message.usage.input_tokens == 12
    assert message.usage.output_tokens == 42
    assert message.text() == "Hello wörld ✓"


@pytest.mark.parametrize("chunk_size", [1, 2, 3, 7, 64, 1000])
def test_chunk_boundaries_do_not_change_the_result(chunk_size: int):
    data = sse_stream(EVENTS)

    whole = StreamDecoder()
    whole.feed(data)

    split = StreamDecoder()
    for start in range(0, len(data), chunk_size):
        split.feed(data[start:start + chunk_size])

    assert split.is_complete
    assert split.response == whole.response


def test_ndjson_needs_finish_for_unterminated_last_line():
    decoder = StreamDecoder()
    decoder.feed(ndjson_stream(EVENTS))
    assert not decoder.is_complete

    decoder.finish()
    assert decoder.is_complete
    assert decoder.response is not None
    assert decoder.response.text() == "Hello wörld ✓"


def test_malformed_line_is_dropped_and_stream_continues():
    events = sse_stream(EVENTS[:4])
    tail = sse_stream(EVENTS[4:])
    decoder = StreamDecoder()
    decoder.feed(events + b"data: {not json\n\n" + b"data: [1, 2]\n\n" + tail)

    assert decoder.malformed_lines == 2
    assert decoder.is_complete
    assert decoder.response is not None
    assert decoder.response.text() == "Hello wörld ✓"


@pytest.mark.parametrize(
    "bad_event",
    [
        {"type": "content_block_delta", "index": None, "delta": {"type": "text_delta", "text": "x"}},
        {"type": "content_block_delta", "index": 0, "delta": "oops"},
        {"type": "content_block_start", "index": "first", "content_block": {"type": "text"}},
        {"type": "content_block_stop", "index": [0]},
        {"type": "message_start", "message": "oops"},
        {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": "?"}},
        {"type": "message_delta", "delta": "oops"},
    ],
)
def test_event_with_malformed_fields_is_dropped(bad_event: dict):
    seen = []
    decoder = StreamDecoder(on_event=seen.append)
    decoder.feed(sse_stream(EVENTS[:4]) + sse_stream([bad_event]) + sse_stream(EVENTS[4:]))

    assert decoder.malformed_lines == 1
    assert len(seen) == len(EVENTS)
    assert decoder.is_complete
    assert decoder.response is not None
    assert decoder.response.text() == "Hello wörld ✓"
    assert decoder.response.usage.input_tokens == 12
    assert decoder.response.usage.output_tokens == 42


def test_comments_done_sentinel_and_crlf_are_ignored():
    body = sse_stream(EVENTS).replace(b"\n", b"\r\n")
    decoder = StreamDecoder()
    decoder.feed(b": keep-alive\r\n" + body + b"data: [DONE]\r\n")

    assert decoder.is_complete
    assert decoder.malformed_lines == 0


def test_unparseable_tool_input_is_kept_as_raw_string():
    events = [
        EVENTS[0],
        {
            "type": "content_block_start",
            "index": 0,
            "content_block": {"type": "tool_use", "id": "toolu_02", "name": "idascript", "input": {}},
        },
        {
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "input_json_delta", "partial_json": '{"code": "unterminated'},
        },
        {"type": "content_block_stop", "index": 0},
        {"type": "message_stop"},
    ]
    decoder = StreamDecoder()
    decoder.feed(sse_stream(events))

    assert decoder.response is not None
    block = decoder.response.content[0]
    assert isinstance(block, ToolUseBlock)
    assert block.input == '{"code": "unterminated'


def test_error_event_sets_terminal_error():
    decoder = StreamDecoder()
    decoder.feed(
        sse_stream(
            EVENTS[:4]
            + [{"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}]
        )
    )

    assert decoder.has_error
    assert decoder.error == "Overloaded"
    assert not decoder.is_complete


def test_unknown_stage_is_ignored():
    assert parse_stream_event({"type": "mystery_stage", "payload": 1}) is None

    decoder = StreamDecoder()
    decoder.feed(sse_stream([{"type": "mystery_stage"}] + EVENTS))
    assert decoder.events_seen == len(EVENTS)
    assert decoder.is_complete


def test_delta_for_unknown_index_is_ignored():
    decoder = StreamDecoder()
    decoder.feed(
        sse_stream(
            [
                EVENTS[0],
                {"type": "content_block_delta", "index": 5, "delta": {"type": "text_delta", "text": "x"}},
                {"type": "message_stop"},
            ]
        )
    )
    assert decoder.response is not None
    assert decoder.response.content == []


def test_on_event_receives_events_in_order():
    seen = []
    decoder = StreamDecoder(on_event=seen.append)
    decoder.feed(sse_stream(EVENTS))

    assert isinstance(seen[0], MessageStart)
    assert isinstance(seen[-1], MessageStop)
    text_deltas = [e.payload for e in seen if isinstance(e, ContentBlockDelta) and e.delta_type == "text_delta"]
    assert text_deltas == ["Hello ", "wörld ✓"]


def test_incomplete_stream_keeps_partial_blocks():
    decoder = StreamDecoder()
    decoder.feed(sse_stream(EVENTS[:5]))

    assert not decoder.is_complete
    assert decoder.snapshot_blocks() == [TextBlock(text="Hello wörld ✓")]


def test_reset_allows_reuse():
    decoder = StreamDecoder()
    decoder.feed(sse_stream(EVENTS[:3]) + b"data: {bad\n")
    decoder.reset()

    assert decoder.response is None
    assert decoder.malformed_lines == 0

    decoder.feed(sse_stream(EVENTS))
    assert decoder.is_complete


def test_feed_json_accepts_parsed_events():
    decoder = StreamDecoder()
    for event in EVENTS:
        decoder.feed_json(event)

    assert decoder.is_complete
    assert decoder.response is not None
    assert decoder.response.stop_reason == StopReason.TOOL_USE
