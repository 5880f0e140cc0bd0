"""Per-session tracing and aggregate stream metrics."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone

from stream_agent.types import ToolTrace


@dataclass(slots=True)
class SessionTrace:
    trace_id: str
    timestamp_utc: str
    correlation_id: str
    message_id: str
    user_message: str
    transcript: str
    tool_traces: list[ToolTrace]
    event_count: int
    latency_ms: float
    upstream_error: str | None
    cancelled: bool
    replayed: bool = False


class TraceStore:
    """In-memory trace storage for API-level observability."""

    def __init__(self, *, max_records: int = 1000) -> None:
        self._records: dict[str, SessionTrace] = {}
        self._max_records = max_records

    def create_record(
        self,
        *,
        trace_id: str,
        correlation_id: str,
        message_id: str,
        user_message: str,
        transcript: str,
        tool_traces: list[ToolTrace],
        event_count: int,
        latency_ms: float,
        upstream_error: str | None = None,
        cancelled: bool = False,
        replayed: bool = False,
    ) -> SessionTrace:
        record = SessionTrace(
            trace_id=trace_id,
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            correlation_id=correlation_id,
            message_id=message_id,
            user_message=user_message,
            transcript=transcript,
            tool_traces=tool_traces,
            event_count=event_count,
            latency_ms=latency_ms,
            upstream_error=upstream_error,
            cancelled=cancelled,
            replayed=replayed,
        )
        self._records[trace_id] = record
        while len(self._records) > self._max_records:
            del self._records[next(iter(self._records))]
        return record

    def get(self, trace_id: str) -> SessionTrace:
        record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[SessionTrace]:
        return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate core observability metrics for dashboard display."""
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_sessions": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "total_tool_calls": 0,
                "failed_tool_calls": 0,
                "upstream_errors": 0,
                "cancelled_sessions": 0,
                "replayed_sessions": 0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        tool_traces = [trace for record in records for trace in record.tool_traces]

        return {
            "total_sessions": total,
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "total_tool_calls": len(tool_traces),
            "failed_tool_calls": sum(1 for trace in tool_traces if trace.status != "ok"),
            "upstream_errors": sum(1 for record in records if record.upstream_error),
            "cancelled_sessions": sum(1 for record in records if record.cancelled),
            "replayed_sessions": sum(1 for record in records if record.replayed),
        }


class Timer:
    """Simple context timer."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
