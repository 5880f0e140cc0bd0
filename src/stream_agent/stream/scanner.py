"""Incremental scanner extracting tool-call markers from a token stream.

Recognised marker forms::

    <tool_call name="search_flights" args={"origin":"SFO"}></tool_call>
    <call name=search args={"origin":"SFO"}/>

The argument payload is delimited by a depth-counting scan that understands
JSON strings and escapes, so nested objects and arrays are never truncated at
the first inner closing brace. Input may be split at any character boundary:
a trailing fragment that could still become a marker is kept in the buffer
and everything before it is released as text.

A held candidate keeps its parse state between chunks, so each character of
a marker is examined once no matter how finely the stream is split.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum

from stream_agent.config import ScannerConfig
from stream_agent.types import TextDelta, ToolCallRecord

logger = logging.getLogger(__name__)

Segment = TextDelta | ToolCallRecord

_NAME_CHARS = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_.:-")
_TAG_CHARS = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_-")


class ScanState(str, Enum):
    OUTSIDE_MARKER = "outside-marker"
    INSIDE_MARKER = "inside-marker"


class _Incomplete(Exception):
    """More input is needed before the candidate marker can be decided."""


class _NoMarker(Exception):
    """The candidate at this position is not a marker."""


@dataclass(slots=True)
class ScanResult:
    """Ordered output of one `consume` or `flush` call."""

    segments: list[Segment] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(seg.text for seg in self.segments if isinstance(seg, TextDelta))

    @property
    def calls(self) -> list[ToolCallRecord]:
        return [seg for seg in self.segments if isinstance(seg, ToolCallRecord)]

    def __bool__(self) -> bool:
        return bool(self.segments)


@dataclass(slots=True)
class _Match:
    end: int
    name: str
    payload: str


class _Phase(Enum):
    TAG = "tag"
    SPACE = "space"
    LITERAL = "literal"
    NAME = "name"
    QUOTED_NAME = "quoted-name"
    BARE_NAME = "bare-name"
    PAYLOAD_START = "payload-start"
    PAYLOAD = "payload"
    CLOSE = "close"
    DONE = "done"


class _Candidate:
    """Resumable parse of one marker candidate opening at `start`.

    `advance` walks the buffer one character at a time and stops with
    `_Incomplete` when input runs out; calling it again with a longer buffer
    picks up at the same character.
    """

    __slots__ = (
        "start",
        "pos",
        "limit",
        "phase",
        "mark",
        "tag",
        "name",
        "payload_start",
        "payload_end",
        "depth",
        "in_string",
        "escaped",
        "spaces",
        "space_required",
        "literal",
        "literal_index",
        "after",
    )

    def __init__(self, start: int, max_chars: int) -> None:
        self.start = start
        self.pos = start + 1
        self.limit = start + max_chars
        self.phase = _Phase.TAG
        self.mark = self.pos
        self.tag = ""
        self.name = ""
        self.payload_start = 0
        self.payload_end = 0
        self.depth = 0
        self.in_string = False
        self.escaped = False
        self.spaces = 0
        self.space_required = False
        self.literal = ""
        self.literal_index = 0
        self.after = _Phase.DONE

    def shift(self, offset: int) -> None:
        """Rebase buffer offsets after the text before `start` was released."""
        self.start -= offset
        self.pos -= offset
        self.limit -= offset
        self.mark -= offset
        self.payload_start -= offset
        self.payload_end -= offset

    def advance(self, buf: str, tags: tuple[str, ...]) -> _Match:
        while self.phase is not _Phase.DONE:
            # The length cap is checked first so the decision does not depend
            # on how much input happens to be buffered.
            if self.pos >= self.limit:
                raise _NoMarker
            if self.pos >= len(buf):
                if self.phase is _Phase.TAG:
                    partial = buf[self.mark :]
                    if not any(candidate.startswith(partial) for candidate in tags):
                        raise _NoMarker
                raise _Incomplete
            self._step(buf[self.pos], buf, tags)
        return _Match(
            end=self.pos,
            name=self.name,
            payload=buf[self.payload_start : self.payload_end],
        )

    def _step(self, char: str, buf: str, tags: tuple[str, ...]) -> None:
        phase = self.phase
        if phase is _Phase.PAYLOAD:
            self._step_payload(char)
        elif phase is _Phase.TAG:
            if char in _TAG_CHARS:
                self.pos += 1
                return
            self.tag = buf[self.mark : self.pos]
            if self.tag not in tags:
                raise _NoMarker
            self._expect_space(required=True, then="name=", after=_Phase.NAME)
        elif phase is _Phase.SPACE:
            if char.isspace():
                self.spaces += 1
                self.pos += 1
                return
            if self.space_required and not self.spaces:
                raise _NoMarker
            self.phase = _Phase.LITERAL if self.literal else self.after
        elif phase is _Phase.LITERAL:
            if char != self.literal[self.literal_index]:
                raise _NoMarker
            self.pos += 1
            self.literal_index += 1
            if self.literal_index == len(self.literal):
                self.phase = self.after
        elif phase is _Phase.NAME:
            if char == '"':
                self.pos += 1
                self.phase = _Phase.QUOTED_NAME
            else:
                self.phase = _Phase.BARE_NAME
            self.mark = self.pos
        elif phase is _Phase.QUOTED_NAME:
            if char == "\n":
                raise _NoMarker
            if char != '"':
                self.pos += 1
                return
            self._finish_name(buf)
            self.pos += 1
        elif phase is _Phase.BARE_NAME:
            if char in _NAME_CHARS:
                self.pos += 1
                return
            self._finish_name(buf)
        elif phase is _Phase.PAYLOAD_START:
            if char not in "{[":
                raise _NoMarker
            self.payload_start = self.pos
            self.phase = _Phase.PAYLOAD
        elif phase is _Phase.CLOSE:
            self.pos += 1
            if char == "/":
                self._expect_literal(">", after=_Phase.DONE)
            elif char == ">":
                self._expect_space(required=False, then=f"</{self.tag}>", after=_Phase.DONE)
            else:
                raise _NoMarker

    def _step_payload(self, char: str) -> None:
        self.pos += 1
        if self.in_string:
            if self.escaped:
                self.escaped = False
            elif char == "\\":
                self.escaped = True
            elif char == '"':
                self.in_string = False
        elif char == '"':
            self.in_string = True
        elif char in "{[":
            self.depth += 1
        elif char in "}]":
            self.depth -= 1
            if self.depth == 0:
                self.payload_end = self.pos
                self._expect_space(required=False, then="", after=_Phase.CLOSE)

    def _finish_name(self, buf: str) -> None:
        self.name = buf[self.mark : self.pos]
        if not self.name:
            raise _NoMarker
        self._expect_space(required=True, then="args=", after=_Phase.PAYLOAD_START)

    def _expect_space(self, *, required: bool, then: str, after: _Phase) -> None:
        self.phase = _Phase.SPACE
        self.spaces = 0
        self.space_required = required
        self.literal = then
        self.literal_index = 0
        self.after = after

    def _expect_literal(self, literal: str, *, after: _Phase) -> None:
        self.phase = _Phase.LITERAL
        self.literal = literal
        self.literal_index = 0
        self.after = after


class MarkerScanner:
    """Stateful scanner owned by exactly one streaming session."""

    def __init__(self, config: ScannerConfig | None = None) -> None:
        self.config = config or ScannerConfig()
        self._tags = tuple(self.config.tags)
        self._buffer = ""
        self._held: _Candidate | None = None

    @property
    def state(self) -> ScanState:
        return ScanState.INSIDE_MARKER if self._buffer else ScanState.OUTSIDE_MARKER

    @property
    def pending(self) -> str:
        """Text held back because it may still start a marker."""
        return self._buffer

    def consume(self, chunk: str) -> ScanResult:
        if not chunk:
            return ScanResult()
        self._buffer += chunk
        return self._drain(final=False)

    def flush(self) -> ScanResult:
        """Release everything still buffered; never waits for more input."""
        if not self._buffer:
            return ScanResult()
        return self._drain(final=True)

    def reset(self) -> None:
        self._buffer = ""
        self._held = None

    def _drain(self, *, final: bool) -> ScanResult:
        buf = self._buffer
        result = ScanResult()
        text_start = 0
        pos = 0

        while True:
            candidate, self._held = self._held, None
            if candidate is None:
                start = buf.find("<", pos)
                if start == -1:
                    break
                candidate = _Candidate(start, self.config.max_marker_chars)
            start = candidate.start
            try:
                match = candidate.advance(buf, self._tags)
            except _Incomplete:
                if final:
                    pos = start + 1
                    continue
                self._append_text(result, buf[text_start:start])
                candidate.shift(start)
                self._held = candidate
                self._buffer = buf[start:]
                return result
            except _NoMarker:
                pos = start + 1
                continue

            self._append_text(result, buf[text_start:start])
            record = self._build_record(match)
            if record is not None:
                result.segments.append(record)
            text_start = pos = match.end

        self._append_text(result, buf[text_start:])
        self._buffer = ""
        return result

    @staticmethod
    def _build_record(match: _Match) -> ToolCallRecord | None:
        try:
            arguments = json.loads(match.payload)
        except json.JSONDecodeError as exc:
            logger.warning(
                "Dropping tool call with malformed arguments",
                extra={"tool_name": match.name, "reason": str(exc), "payload_chars": len(match.payload)},
            )
            return None
        return ToolCallRecord(name=match.name, arguments=arguments)

    @staticmethod
    def _append_text(result: ScanResult, text: str) -> None:
        if not text:
            return
        if result.segments and isinstance(result.segments[-1], TextDelta):
            result.segments[-1] = TextDelta(result.segments[-1].text + text)
        else:
            result.segments.append(TextDelta(text))
