"""FastAPI entrypoint for streaming chat, traces and metrics."""

from __future__ import annotations

import os
import uuid
from collections.abc import AsyncIterator, Iterable
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from stream_agent.agent.fallback import DeterministicChatStream
from stream_agent.agent.registry import ToolRegistry
from stream_agent.agent.tools import register_builtin_tools
from stream_agent.config import ReplayConfig, StreamConfig
from stream_agent.infra.persistence import SqliteTurnLog
from stream_agent.infra.replay import InMemoryReplayStore, ReplayCache, ReplayEntry
from stream_agent.infra.retry import RetryPolicy
from stream_agent.llm.chat_stream import ChatStream, LangChainChatStream, build_system_prompt
from stream_agent.obs.logconfig import configure_logging
from stream_agent.obs.tracing import Timer, TraceStore
from stream_agent.protocol.events import ProtocolEvent, encode_event, transcript_events
from stream_agent.stream.orchestrator import SessionOutcome, StreamOrchestrator
from stream_agent.types import ChatMessage

_SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


def _create_llm() -> Any:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return None

    from langchain_openai import ChatOpenAI

    return ChatOpenAI(model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"), temperature=0.4, max_tokens=512)


class ChatMessageIn(BaseModel):
    role: str = "user"
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatMessageIn] = Field(min_length=1)
    stream: bool = True
    conversation_id: str | None = None


configure_logging(os.getenv("LOG_LEVEL", "INFO"))

app = FastAPI(title="Stream Agent", version="0.1.0")

_stream_config = StreamConfig()
_replay_config = ReplayConfig()
_registry = ToolRegistry()
register_builtin_tools(_registry, duffel_api_key=os.getenv("DUFFEL_API_KEY"))
_registry.freeze()

_trace_store = TraceStore()
_turn_log = SqliteTurnLog(os.getenv("STREAM_AGENT_DB", "stream_agent.db"))
_replay_cache = ReplayCache(InMemoryReplayStore(capacity=_replay_config.capacity), _replay_config)
_system_prompt = build_system_prompt(_registry)
_llm = _create_llm()


def _build_chat_stream(correlation_id: str) -> ChatStream:
    if _llm is None:
        return DeterministicChatStream()
    return LangChainChatStream(
        _llm,
        system_prompt=_system_prompt,
        retry_policy=RetryPolicy.from_config(_stream_config.retry),
        correlation_id=correlation_id,
    )


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "llm_configured": _llm is not None,
        "stream_mode": "langchain" if _llm is not None else "deterministic",
        "tools": [spec.display_name for spec in _registry.specs()],
        "trace_count": len(_trace_store.list_recent(limit=1000)),
    }


@app.post("/chat")
async def chat(
    request: ChatRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    correlation_header: str | None = Header(default=None, alias="X-Correlation-ID"),
) -> Any:
    correlation_id = correlation_header or str(uuid.uuid4())
    messages = [ChatMessage(role=_normalize_role(m.role), content=m.content) for m in request.messages]
    user_message = next((m.content for m in reversed(messages) if m.role == "user" and m.content), None)
    if user_message is None:
        raise HTTPException(status_code=400, detail="At least one user message with content is required.")
    headers = {"X-Correlation-ID": correlation_id}

    if idempotency_key:
        with Timer() as timer:
            cached = await _replay_cache.lookup(idempotency_key)
        if cached is not None:
            _record_replay(cached, correlation_id, user_message, timer.elapsed_ms)
            return _replay_response(cached, stream=request.stream, headers=headers)

    orchestrator = StreamOrchestrator(
        chat_stream=_build_chat_stream(correlation_id),
        registry=_registry,
        config=_stream_config,
        correlation_id=correlation_id,
        session_id=request.conversation_id,
        persistence=_turn_log,
        replay=_replay_cache,
        idempotency_key=idempotency_key,
    )

    if request.stream:
        return StreamingResponse(
            _stream_frames(orchestrator, messages, user_message),
            media_type="text/event-stream",
            headers={**headers, **_SSE_HEADERS},
        )

    outcome = await orchestrator.run(messages, _discard, user_message=user_message)
    _record_outcome(outcome, user_message)
    return JSONResponse(_batch_body(outcome), headers=headers)


@app.get("/traces")
def traces(limit: int = 20) -> dict[str, Any]:
    records = [asdict(record) for record in _trace_store.list_recent(limit=limit)]
    return {"items": records}


@app.get("/traces/{trace_id}")
def trace_detail(trace_id: str) -> dict[str, Any]:
    try:
        record = _trace_store.get(trace_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return asdict(record)


@app.get("/metrics")
def metrics() -> dict[str, Any]:
    return _trace_store.summary()


async def _stream_frames(
    orchestrator: StreamOrchestrator,
    messages: list[ChatMessage],
    user_message: str,
) -> AsyncIterator[bytes]:
    try:
        async for event in orchestrator.events(messages, user_message=user_message):
            yield encode_event(event)
    finally:
        if orchestrator.outcome is not None:
            _record_outcome(orchestrator.outcome, user_message)


async def _discard(event: ProtocolEvent) -> None:
    del event  # batch responses read events from the session outcome.


async def _iter_frames(events: Iterable[ProtocolEvent]) -> AsyncIterator[bytes]:
    for event in events:
        yield encode_event(event)


def _replay_response(entry: ReplayEntry, *, stream: bool, headers: dict[str, str]) -> Any:
    body = entry.body if isinstance(entry.body, dict) else {"message": str(entry.body)}
    if not stream:
        return JSONResponse(body, status_code=entry.status, headers={**headers, "Idempotent-Replay": "true"})
    events = transcript_events(
        str(body.get("message", "")),
        str(body.get("message_id") or uuid.uuid4()),
        chunk_chars=_stream_config.replay_chunk_chars,
    )
    return StreamingResponse(
        _iter_frames(events),
        media_type="text/event-stream",
        headers={**headers, **_SSE_HEADERS, "Idempotent-Replay": "true"},
    )


def _batch_body(outcome: SessionOutcome) -> dict[str, Any]:
    return {
        "message_id": outcome.message_id,
        "message": outcome.transcript,
        "events": [event.model_dump(mode="json") for event in outcome.events],
    }


def _record_outcome(outcome: SessionOutcome, user_message: str) -> None:
    _trace_store.create_record(
        trace_id=outcome.message_id,
        correlation_id=outcome.correlation_id,
        message_id=outcome.message_id,
        user_message=user_message,
        transcript=outcome.transcript,
        tool_traces=outcome.tool_traces,
        event_count=len(outcome.events),
        latency_ms=outcome.latency_ms,
        upstream_error=outcome.upstream_error,
        cancelled=outcome.cancelled,
    )


def _record_replay(entry: ReplayEntry, correlation_id: str, user_message: str, latency_ms: float) -> None:
    body = entry.body if isinstance(entry.body, dict) else {}
    _trace_store.create_record(
        trace_id=str(uuid.uuid4()),
        correlation_id=correlation_id,
        message_id=str(body.get("message_id", "")),
        user_message=user_message,
        transcript=str(body.get("message", "")),
        tool_traces=[],
        event_count=0,
        latency_ms=latency_ms,
        replayed=True,
    )


def _normalize_role(role: str) -> str:
    return role if role in ("assistant", "system") else "user"
