import asyncio
from collections.abc import AsyncIterator, Sequence

import pytest
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage
from pydantic import BaseModel

from stream_agent.agent.fallback import DeterministicChatStream
from stream_agent.agent.registry import ToolDefinition, ToolRegistry
from stream_agent.agent.tools import register_builtin_tools
from stream_agent.config import RetryConfig, StreamConfig
from stream_agent.infra.persistence import SqliteTurnLog
from stream_agent.infra.replay import InMemoryReplayStore, ReplayCache
from stream_agent.llm.chat_stream import LangChainChatStream
from stream_agent.protocol.events import (
    DoneEvent,
    ErrorEvent,
    TokenEvent,
    ToolCallEvent,
    ToolResultEvent,
)
from stream_agent.stream.orchestrator import SessionState, StreamOrchestrator
from stream_agent.types import ChatMessage, TurnRecord


class LookupInput(BaseModel):
    q: str


class ScriptedStream:
    """Yields fixed chunks, optionally failing after them."""

    def __init__(self, chunks: Sequence[str | bytes], *, error: Exception | None = None, delay: float = 0.0) -> None:
        self.chunks = list(chunks)
        self.error = error
        self.delay = delay
        self.closed = False

    async def stream(self, messages: Sequence[ChatMessage]) -> AsyncIterator[str | bytes]:
        try:
            for chunk in self.chunks:
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield chunk
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


class FailingTurnLog:
    async def log_turn(self, record: TurnRecord) -> None:
        raise RuntimeError("database is locked")


def _registry(*, tool_delay: float = 0.0) -> ToolRegistry:
    async def _lookup(data: LookupInput) -> dict[str, str]:
        await asyncio.sleep(tool_delay)
        return {"answer": data.q.upper()}

    return ToolRegistry(
        [
            ToolDefinition(
                id="kb-mcp::lookup",
                display_name="lookup",
                description="look something up",
                args_schema=LookupInput,
                handler=_lookup,
            )
        ]
    ).freeze()


def _config(**overrides: object) -> StreamConfig:
    fields: dict[str, object] = {"retry": RetryConfig(max_attempts=1)}
    fields.update(overrides)
    return StreamConfig(**fields)


async def _run(orchestrator: StreamOrchestrator, question: str = "hi") -> list[object]:
    events: list[object] = []

    async def _emit(event: object) -> None:
        events.append(event)

    await orchestrator.run([ChatMessage(role="user", content=question)], _emit)
    return events


def _types(events: list[object]) -> list[str]:
    return [event.type for event in events]


@pytest.mark.asyncio
async def test_text_after_marker_waits_for_slow_tool() -> None:
    chat = ScriptedStream(["Before ", '<tool_call name="lookup" args={"q":"x"}></tool_call>', " after", " end"])
    orchestrator = StreamOrchestrator(
        chat_stream=chat,
        registry=_registry(tool_delay=0.05),
        config=_config(),
        message_id="m-1",
    )

    events = await _run(orchestrator)

    assert events == [
        TokenEvent(token="Before "),
        ToolCallEvent(name="lookup", args={"q": "x"}),
        ToolResultEvent(result={"answer": "X"}),
        TokenEvent(token=" after"),
        TokenEvent(token=" end"),
        DoneEvent(message_id="m-1"),
    ]
    assert orchestrator.state is SessionState.CLOSED
    assert orchestrator.outcome is not None
    assert orchestrator.outcome.transcript == "Before  after end"
    assert [trace.status for trace in orchestrator.outcome.tool_traces] == ["ok"]
    assert chat.closed


@pytest.mark.asyncio
async def test_unknown_tool_and_bad_arguments_do_not_end_the_session() -> None:
    chat = ScriptedStream(
        [
            "a",
            "<call name=missing args={}/>",
            "b",
            '<call name=lookup args={"q":1}/>',
            "c",
            '<call name=lookup args={"q":"ok"/>',
        ]
    )
    orchestrator = StreamOrchestrator(chat_stream=chat, registry=_registry(), config=_config())

    events = await _run(orchestrator)

    assert _types(events) == ["token", "error", "token", "tool_call", "error", "token", "token", "done"]
    assert events[1] == ErrorEvent(error="Unknown tool: missing")
    assert events[-2] == TokenEvent(token='<call name=lookup args={"q":"ok"/>')


@pytest.mark.asyncio
async def test_upstream_failure_flushes_then_errors_then_done() -> None:
    chat = ScriptedStream(["partial <tool_"], error=ConnectionError("socket closed"))
    orchestrator = StreamOrchestrator(chat_stream=chat, registry=_registry(), config=_config(), message_id="m-2")

    events = await _run(orchestrator)

    assert events == [
        TokenEvent(token="partial "),
        TokenEvent(token="<tool_"),
        ErrorEvent(error="Upstream stream failed: socket closed"),
        DoneEvent(message_id="m-2"),
    ]
    assert orchestrator.outcome.upstream_error == "socket closed"


@pytest.mark.asyncio
async def test_exactly_one_done_and_it_is_last() -> None:
    chat = ScriptedStream(["one ", "two ", '<call name=lookup args={"q":"z"}/>'])
    orchestrator = StreamOrchestrator(chat_stream=chat, registry=_registry(), config=_config())

    events = await _run(orchestrator)

    assert _types(events).count("done") == 1
    assert _types(events)[-1] == "done"
    with pytest.raises(RuntimeError):
        await _run(orchestrator)


@pytest.mark.asyncio
async def test_bytes_split_inside_multibyte_characters() -> None:
    encoded = "Café 日本 ok".encode("utf-8")
    chunks = [encoded[i : i + 1] for i in range(len(encoded))]
    orchestrator = StreamOrchestrator(chat_stream=ScriptedStream(chunks), registry=_registry(), config=_config())

    await _run(orchestrator)

    assert orchestrator.outcome.transcript == "Café 日本 ok"
    assert "�" not in orchestrator.outcome.transcript


@pytest.mark.asyncio
async def test_text_chunks_stay_behind_held_bytes() -> None:
    orchestrator = StreamOrchestrator(
        chat_stream=ScriptedStream([b"caf\xc3", b"\xa9", " ok", b" \xe6\x97", b"\xa5!"]),
        registry=_registry(),
        config=_config(),
    )

    await _run(orchestrator)

    assert orchestrator.outcome.transcript == "caf\u00e9 ok \u65e5!"

    interleaved = StreamOrchestrator(
        chat_stream=ScriptedStream([b"caf\xc3", "!", b"\xa9"]),
        registry=_registry(),
        config=_config(),
    )

    await _run(interleaved)

    assert interleaved.outcome.transcript == "caf\ufffd!\ufffd"


@pytest.mark.asyncio
async def test_persistence_failure_is_swallowed() -> None:
    orchestrator = StreamOrchestrator(
        chat_stream=ScriptedStream(["hello"]),
        registry=_registry(),
        config=_config(),
        persistence=FailingTurnLog(),
    )

    events = await _run(orchestrator)

    assert _types(events) == ["token", "done"]


@pytest.mark.asyncio
async def test_turn_is_persisted_after_done(tmp_path) -> None:
    turn_log = SqliteTurnLog(tmp_path / "turns.db")
    orchestrator = StreamOrchestrator(
        chat_stream=ScriptedStream(["Hi ", "there"]),
        registry=_registry(),
        config=_config(),
        session_id="s-1",
        correlation_id="c-1",
        persistence=turn_log,
    )

    await _run(orchestrator, "hello?")

    assert turn_log.list_events("s-1") == [("user", "hello?", "c-1"), ("assistant", "Hi there", "c-1")]


@pytest.mark.asyncio
async def test_replay_stored_only_for_clean_sessions() -> None:
    cache = ReplayCache(InMemoryReplayStore())
    clean = StreamOrchestrator(
        chat_stream=ScriptedStream(["all ", "good"]),
        registry=_registry(),
        config=_config(),
        message_id="m-3",
        replay=cache,
        idempotency_key="idem-1",
    )
    failed = StreamOrchestrator(
        chat_stream=ScriptedStream(["half"], error=RuntimeError("boom")),
        registry=_registry(),
        config=_config(),
        replay=cache,
        idempotency_key="idem-2",
    )

    await _run(clean)
    await _run(failed)

    entry = await cache.lookup("idem-1")
    assert entry is not None
    assert entry.body["message_id"] == "m-3"
    assert entry.body["message"] == "all good"
    assert entry.body["events"][-1] == {"type": "done", "message_id": "m-3"}
    assert await cache.lookup("idem-2") is None


@pytest.mark.asyncio
async def test_cancel_abandons_tool_and_skips_done() -> None:
    started = asyncio.Event()
    persisted: list[TurnRecord] = []

    class _Log:
        async def log_turn(self, record: TurnRecord) -> None:
            persisted.append(record)

    async def _hang(data: LookupInput) -> str:
        started.set()
        await asyncio.sleep(10)
        return "late"

    registry = ToolRegistry(
        [ToolDefinition(id="slow::hang", display_name="hang", description="", args_schema=LookupInput, handler=_hang)]
    )
    orchestrator = StreamOrchestrator(
        chat_stream=ScriptedStream(['<call name=hang args={"q":"x"}/>', "never shown"]),
        registry=registry,
        config=_config(),
        persistence=_Log(),
    )
    events: list[object] = []

    async def _emit(event: object) -> None:
        events.append(event)

    task = asyncio.create_task(orchestrator.run([ChatMessage(role="user", content="go")], _emit))
    await asyncio.wait_for(started.wait(), timeout=1)
    orchestrator.cancel()
    outcome = await asyncio.wait_for(task, timeout=1)

    assert outcome.cancelled
    assert _types(events) == ["tool_call"]
    assert persisted == []
    assert orchestrator.state is SessionState.CLOSED


@pytest.mark.asyncio
async def test_events_iterator_yields_session_in_order() -> None:
    orchestrator = StreamOrchestrator(
        chat_stream=DeterministicChatStream(),
        registry=register_and_freeze(),
        config=_config(),
    )

    events = [event async for event in orchestrator.events([ChatMessage(role="user", content="What is on my calendar?")])]

    types = _types(events)
    assert types[-1] == "done"
    call_index = types.index("tool_call")
    assert types[call_index + 1] == "tool_result"
    assert events[call_index].name == "list_events"
    assert events[call_index + 1].result["meta"]["count"] == 2


@pytest.mark.asyncio
async def test_langchain_chat_stream_feeds_scanner() -> None:
    llm = GenericFakeChatModel(
        messages=iter([AIMessage(content='Sure. <call name=lookup args={"q":"abc"}/> Bye now.')])
    )
    chat = LangChainChatStream(llm)
    orchestrator = StreamOrchestrator(chat_stream=chat, registry=_registry(), config=_config())

    events = await _run(orchestrator)

    assert ToolResultEvent(result={"answer": "ABC"}) in events
    assert orchestrator.outcome.transcript == "Sure.  Bye now."
    assert _types(events)[-1] == "done"


def test_orchestrator_requires_registry() -> None:
    with pytest.raises(ValueError):
        StreamOrchestrator(chat_stream=ScriptedStream([]), registry=None)  # type: ignore[arg-type]


def register_and_freeze() -> ToolRegistry:
    registry = ToolRegistry()
    register_builtin_tools(registry)
    return registry.freeze()
