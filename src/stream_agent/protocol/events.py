"""Client-visible protocol events and their SSE wire framing."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterator
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class TokenEvent(_Event):
    type: Literal["token"] = "token"
    token: str


class ToolCallEvent(_Event):
    type: Literal["tool_call"] = "tool_call"
    name: str
    args: Any


class ToolResultEvent(_Event):
    type: Literal["tool_result"] = "tool_result"
    result: Any


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    error: str


class DoneEvent(_Event):
    type: Literal["done"] = "done"
    message_id: str


ProtocolEvent = Annotated[
    Union[TokenEvent, ToolCallEvent, ToolResultEvent, ErrorEvent, DoneEvent],
    Field(discriminator="type"),
]

EventSink = Callable[[ProtocolEvent], Awaitable[None]]

_event_adapter: TypeAdapter[ProtocolEvent] = TypeAdapter(ProtocolEvent)

_FRAME_PREFIX = b"data: "
_FRAME_SUFFIX = b"\n\n"


def encode_event(event: ProtocolEvent) -> bytes:
    """Serialize one event as a server-sent-events frame."""
    return _FRAME_PREFIX + event.model_dump_json().encode("utf-8") + _FRAME_SUFFIX


def parse_event(data: str | bytes | dict[str, Any]) -> ProtocolEvent:
    if isinstance(data, dict):
        return _event_adapter.validate_python(data)
    return _event_adapter.validate_json(data)


def decode_frames(payload: str | bytes) -> list[ProtocolEvent]:
    """Parse a complete SSE body back into events, ignoring non-data lines."""
    text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    events: list[ProtocolEvent] = []
    for frame in text.split("\n\n"):
        data_lines = [line[len("data:"):].lstrip() for line in frame.splitlines() if line.startswith("data:")]
        if data_lines:
            events.append(parse_event("\n".join(data_lines)))
    return events


def transcript_events(transcript: str, message_id: str, *, chunk_chars: int = 128) -> Iterator[ProtocolEvent]:
    """Replay a stored transcript as token events followed by `done`."""
    for start in range(0, len(transcript), chunk_chars):
        yield TokenEvent(token=transcript[start : start + chunk_chars])
    yield DoneEvent(message_id=message_id)
