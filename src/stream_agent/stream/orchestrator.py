"""Drives one model stream through the scanner and tool executor.

Reading and emitting are split across two coroutines joined by a bounded
queue of scanned segments. The reader keeps pulling chunks while a tool call
is in flight; the dispatcher emits segments strictly in stream order, so
text that followed a marker is only sent after that call's result or error.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter
from typing import Any

from stream_agent.agent.executor import ToolExecutor
from stream_agent.agent.registry import ToolRegistry
from stream_agent.config import StreamConfig
from stream_agent.errors import RetryCancelledError
from stream_agent.infra.persistence import TurnLogger
from stream_agent.infra.replay import ReplayCache
from stream_agent.infra.retry import RetryPolicy
from stream_agent.llm.chat_stream import ChatStream
from stream_agent.protocol.events import (
    DoneEvent,
    ErrorEvent,
    EventSink,
    ProtocolEvent,
    TokenEvent,
)
from stream_agent.stream.scanner import MarkerScanner, ScanResult
from stream_agent.types import ChatMessage, TextDelta, ToolCallRecord, ToolTrace, TurnRecord

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    OPEN = "open"
    STREAMING = "streaming"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass(slots=True)
class SessionOutcome:
    session_id: str
    correlation_id: str
    message_id: str
    transcript: str
    events: list[ProtocolEvent] = field(default_factory=list)
    tool_traces: list[ToolTrace] = field(default_factory=list)
    upstream_error: str | None = None
    cancelled: bool = False
    latency_ms: float = 0.0


@dataclass(frozen=True, slots=True)
class _UpstreamFailure:
    message: str


_END = object()
_CANCELLED = object()


class StreamOrchestrator:
    """One streaming chat session: ``OPEN -> STREAMING -> DRAINING -> CLOSED``."""

    def __init__(
        self,
        *,
        chat_stream: ChatStream,
        registry: ToolRegistry,
        config: StreamConfig | None = None,
        correlation_id: str | None = None,
        session_id: str | None = None,
        message_id: str | None = None,
        persistence: TurnLogger | None = None,
        replay: ReplayCache | None = None,
        idempotency_key: str | None = None,
    ) -> None:
        if registry is None:
            raise ValueError("StreamOrchestrator requires a tool registry")
        self.chat_stream = chat_stream
        self.config = config or StreamConfig()
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.session_id = session_id or str(uuid.uuid4())
        self.message_id = message_id or str(uuid.uuid4())
        self._persistence = persistence
        self._replay = replay
        self._idempotency_key = idempotency_key

        self._state = SessionState.OPEN
        self._cancel = asyncio.Event()
        self._scanner = MarkerScanner(self.config.scanner)
        self._tool_traces: list[ToolTrace] = []
        self._executor = ToolExecutor(
            registry,
            correlation_id=self.correlation_id,
            retry_policy=RetryPolicy.from_config(self.config.retry),
            timeout_seconds=self.config.tool_timeout_seconds,
            cancel_event=self._cancel,
            observer=self._tool_traces.append,
        )
        self._sink: EventSink | None = None
        self._events: list[ProtocolEvent] = []
        self._transcript: list[str] = []
        self.outcome: SessionOutcome | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def transcript(self) -> str:
        return "".join(self._transcript)

    def cancel(self) -> None:
        """Stop reading and abandon in-flight tool calls (client went away)."""
        if not self._cancel.is_set():
            logger.info(
                "Session cancelled",
                extra={"correlation_id": self.correlation_id, "session_id": self.session_id},
            )
        self._cancel.set()

    async def run(
        self,
        messages: Sequence[ChatMessage],
        emit: EventSink,
        *,
        user_message: str | None = None,
    ) -> SessionOutcome:
        if self._state is not SessionState.OPEN:
            raise RuntimeError("A streaming session can only be run once")
        self._sink = emit
        start = perf_counter()
        logger.info(
            "Session opened",
            extra={"correlation_id": self.correlation_id, "session_id": self.session_id},
        )

        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=self.config.max_pending_segments)
        reader = asyncio.create_task(self._read_upstream(messages, queue))
        upstream_error: str | None = None
        try:
            upstream_error = await self._dispatch(queue)
        except Exception:
            logger.exception(
                "Session dispatch failed",
                extra={"correlation_id": self.correlation_id, "session_id": self.session_id},
            )
            await self._send(ErrorEvent(error="Internal error while streaming the response"))
            upstream_error = "internal error"
        finally:
            if not reader.done():
                reader.cancel()

        if self.cancelled:
            self._state = SessionState.CLOSED
            self.outcome = self._outcome(upstream_error, start)
            return self.outcome

        self._state = SessionState.DRAINING
        await self._send(DoneEvent(message_id=self.message_id))
        self._state = SessionState.CLOSED
        outcome = self.outcome = self._outcome(upstream_error, start)
        logger.info(
            "Session closed",
            extra={
                "correlation_id": self.correlation_id,
                "session_id": self.session_id,
                "message_id": self.message_id,
                "latency_ms": round(outcome.latency_ms),
                "tool_calls": len(self._tool_traces),
                "upstream_error": upstream_error,
            },
        )

        if upstream_error is None:
            await self._store_replay(outcome)
        await self._persist(outcome, user_message if user_message is not None else _last_user_message(messages))
        return outcome

    async def events(
        self,
        messages: Sequence[ChatMessage],
        *,
        user_message: str | None = None,
    ) -> AsyncIterator[ProtocolEvent]:
        """Iterate the session's events; closing the iterator cancels the session."""
        queue: asyncio.Queue[Any] = asyncio.Queue()
        task = asyncio.create_task(self.run(messages, queue.put, user_message=user_message))
        task.add_done_callback(lambda _: queue.put_nowait(_END))
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break
                yield item
            await task
        finally:
            if not task.done():
                self.cancel()
                task.cancel()

    async def _read_upstream(self, messages: Sequence[ChatMessage], queue: asyncio.Queue[Any]) -> None:
        self._state = SessionState.STREAMING
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        failure: str | None = None
        stream: Any = None
        try:
            stream = self.chat_stream.stream(messages)
            async for chunk in stream:
                if self.cancelled:
                    return
                # Text chunks go through the decoder too so bytes it is holding
                # stay ahead of them.
                data = chunk if isinstance(chunk, bytes) else chunk.encode("utf-8")
                await self._enqueue(queue, self._scanner.consume(decoder.decode(data)))
            await self._enqueue(queue, self._scanner.consume(decoder.decode(b"", final=True)))
        except Exception as exc:
            failure = str(exc) or type(exc).__name__
            logger.warning(
                "Upstream stream failed: %s",
                failure,
                extra={"correlation_id": self.correlation_id, "session_id": self.session_id},
            )
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if self.cancelled:
            return
        self._state = SessionState.DRAINING
        await self._enqueue(queue, self._scanner.flush())
        if failure is not None:
            await queue.put(_UpstreamFailure(failure))
        await queue.put(_END)

    @staticmethod
    async def _enqueue(queue: asyncio.Queue[Any], result: ScanResult) -> None:
        for segment in result.segments:
            await queue.put(segment)

    async def _dispatch(self, queue: asyncio.Queue[Any]) -> str | None:
        upstream_error: str | None = None
        while True:
            item = await self._unless_cancelled(queue.get())
            if item is _CANCELLED or item is _END:
                return upstream_error
            if isinstance(item, TextDelta):
                self._transcript.append(item.text)
                await self._send(TokenEvent(token=item.text))
            elif isinstance(item, ToolCallRecord):
                try:
                    result = await self._unless_cancelled(
                        self._executor.execute(item.name, item.arguments, self._send)
                    )
                except RetryCancelledError:
                    return upstream_error
                if result is _CANCELLED:
                    return upstream_error
            elif isinstance(item, _UpstreamFailure):
                upstream_error = item.message
                await self._send(ErrorEvent(error=f"Upstream stream failed: {item.message}"))

    async def _unless_cancelled(self, awaitable: Awaitable[Any]) -> Any:
        """Await `awaitable` unless the session is cancelled first.

        On cancellation the pending work is cancelled without waiting for it
        to finish.
        """
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._cancel.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
        if task in done:
            return task.result()
        return _CANCELLED

    async def _send(self, event: ProtocolEvent) -> None:
        if self._state is SessionState.CLOSED:
            logger.warning(
                "Dropping %s event after session close",
                event.type,
                extra={"correlation_id": self.correlation_id, "session_id": self.session_id},
            )
            return
        if self._sink is None:
            raise RuntimeError("Session has no event sink")
        self._events.append(event)
        await self._sink(event)

    def _outcome(self, upstream_error: str | None, start: float) -> SessionOutcome:
        return SessionOutcome(
            session_id=self.session_id,
            correlation_id=self.correlation_id,
            message_id=self.message_id,
            transcript=self.transcript,
            events=list(self._events),
            tool_traces=list(self._tool_traces),
            upstream_error=upstream_error,
            cancelled=self.cancelled,
            latency_ms=(perf_counter() - start) * 1000.0,
        )

    async def _store_replay(self, outcome: SessionOutcome) -> None:
        if self._replay is None or not self._idempotency_key:
            return
        body = {
            "message_id": outcome.message_id,
            "message": outcome.transcript,
            "events": [event.model_dump(mode="json") for event in outcome.events],
        }
        await self._replay.store(self._idempotency_key, body)

    async def _persist(self, outcome: SessionOutcome, user_message: str) -> None:
        if self._persistence is None:
            return
        record = TurnRecord(
            session_id=self.session_id,
            correlation_id=self.correlation_id,
            user_message=user_message,
            assistant_transcript=outcome.transcript,
            message_id=outcome.message_id,
        )
        try:
            await self._persistence.log_turn(record)
        except Exception:
            logger.exception(
                "Failed to persist chat turn",
                extra={"correlation_id": self.correlation_id, "session_id": self.session_id},
            )


def _last_user_message(messages: Sequence[ChatMessage]) -> str:
    for message in reversed(messages):
        if message.role == "user":
            return message.content
    return ""
