import json

import pytest
from pydantic import ValidationError

from stream_agent.protocol.events import (
    DoneEvent,
    ErrorEvent,
    TokenEvent,
    ToolCallEvent,
    ToolResultEvent,
    decode_frames,
    encode_event,
    parse_event,
    transcript_events,
)


def test_token_frame_layout() -> None:
    frame = encode_event(TokenEvent(token="Hi"))

    assert frame.startswith(b"data: ")
    assert frame.endswith(b"\n\n")
    assert json.loads(frame[len(b"data: ") : -2]) == {"type": "token", "token": "Hi"}


def test_each_event_kind_has_its_wire_fields() -> None:
    payloads = [
        json.loads(encode_event(event)[6:-2])
        for event in (
            ToolCallEvent(name="list_events", args={"timeMin": "2025-05-01T00:00:00Z"}),
            ToolResultEvent(result={"status": "success", "data": []}),
            ErrorEvent(error="Tool error: boom"),
            DoneEvent(message_id="m-1"),
        )
    ]

    assert payloads == [
        {"type": "tool_call", "name": "list_events", "args": {"timeMin": "2025-05-01T00:00:00Z"}},
        {"type": "tool_result", "result": {"status": "success", "data": []}},
        {"type": "error", "error": "Tool error: boom"},
        {"type": "done", "message_id": "m-1"},
    ]


def test_frames_escape_newlines_and_non_ascii() -> None:
    frame = encode_event(TokenEvent(token="line\nnext é"))

    assert frame.count(b"\n") == 2
    assert decode_frames(frame) == [TokenEvent(token="line\nnext é")]


def test_decode_frames_ignores_comments() -> None:
    body = b": keep-alive\n\n" + encode_event(TokenEvent(token="a")) + encode_event(DoneEvent(message_id="m"))

    assert decode_frames(body) == [TokenEvent(token="a"), DoneEvent(message_id="m")]


def test_parse_event_rejects_unknown_type() -> None:
    assert parse_event({"type": "error", "error": "x"}) == ErrorEvent(error="x")
    with pytest.raises(ValidationError):
        parse_event({"type": "progress", "value": 1})


def test_transcript_events_chunk_and_finish_with_done() -> None:
    events = list(transcript_events("abcdefg", "m-9", chunk_chars=3))

    assert events == [
        TokenEvent(token="abc"),
        TokenEvent(token="def"),
        TokenEvent(token="g"),
        DoneEvent(message_id="m-9"),
    ]
    assert list(transcript_events("", "m-0")) == [DoneEvent(message_id="m-0")]
