"""Tool execution with paired call/result events and error containment."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Callable
from time import perf_counter
from typing import Any

from pydantic import BaseModel, ValidationError

from stream_agent.agent.registry import ToolDefinition, ToolRegistry
from stream_agent.errors import RetryCancelledError
from stream_agent.infra.retry import RetryPolicy, retry
from stream_agent.protocol.events import ErrorEvent, EventSink, ToolCallEvent, ToolResultEvent
from stream_agent.types import ToolTrace

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 320


class ToolExecutor:
    """Runs tool calls for one session.

    Every resolved call produces a contiguous ``tool_call`` then
    ``tool_result`` or ``error`` pair on the sink; unknown tools produce a
    single ``error``. Failures never propagate to the caller, except
    cancellation of the owning session.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        correlation_id: str,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float = 30.0,
        cancel_event: asyncio.Event | None = None,
        observer: Callable[[ToolTrace], None] | None = None,
    ) -> None:
        if registry is None:
            raise ValueError("ToolExecutor requires a tool registry")
        self.registry = registry
        self.correlation_id = correlation_id
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout_seconds = timeout_seconds
        self._cancel_event = cancel_event
        self._observer = observer

    async def execute(self, tool_id: str, arguments: Any, emit: EventSink) -> Any | None:
        definition = self.registry.lookup(tool_id)
        if definition is None:
            logger.warning(
                "Unknown tool requested",
                extra={"correlation_id": self.correlation_id, "tool_id": tool_id},
            )
            await emit(ErrorEvent(error=f"Unknown tool: {tool_id}"))
            return None

        invocation_id = str(uuid.uuid4())
        log_context = {
            "correlation_id": self.correlation_id,
            "tool_id": definition.id,
            "tool_name": definition.display_name,
            "invocation_id": invocation_id,
        }
        await emit(ToolCallEvent(name=definition.display_name, args=arguments))

        try:
            validated = definition.validate_arguments(arguments)
        except ValidationError as exc:
            reason = _validation_summary(exc)
            logger.warning("Tool arguments rejected: %s", reason, extra=log_context)
            self._observe(definition, arguments, "invalid", 0.0, error=reason)
            await emit(ErrorEvent(error=f"Invalid arguments for {definition.display_name}: {reason}"))
            return None

        logger.info(
            "Tool invocation started",
            extra={**log_context, "args_size": len(json.dumps(arguments, default=str))},
        )
        start = perf_counter()
        try:
            raw = await asyncio.wait_for(
                self._invoke(definition, validated),
                timeout=self.timeout_seconds,
            )
            result = _to_jsonable(raw)
        except (asyncio.CancelledError, RetryCancelledError):
            logger.info("Tool invocation abandoned", extra=log_context)
            raise
        except Exception as exc:
            latency_ms = (perf_counter() - start) * 1000.0
            reason = _error_reason(exc, self.timeout_seconds)
            logger.error(
                "Tool invocation failed: %s",
                reason,
                extra={**log_context, "latency_ms": round(latency_ms)},
            )
            self._observe(definition, arguments, "error", latency_ms, error=reason)
            await emit(ErrorEvent(error=f"Tool error: {reason}"))
            return None

        latency_ms = (perf_counter() - start) * 1000.0
        logger.info(
            "Tool invocation completed",
            extra={**log_context, "latency_ms": round(latency_ms)},
        )
        self._observe(definition, arguments, "ok", latency_ms, output=result)
        await emit(ToolResultEvent(result=result))
        return result

    async def _invoke(self, definition: ToolDefinition, validated: BaseModel) -> Any:
        policy = definition.retry_policy or self.retry_policy
        if not definition.idempotent and definition.retry_policy is None:
            policy = policy.single_attempt()
        return await retry(
            lambda: definition.handler(validated),
            policy,
            operation_name=definition.id,
            correlation_id=self.correlation_id,
            cancel_event=self._cancel_event,
        )

    def _observe(
        self,
        definition: ToolDefinition,
        arguments: Any,
        status: str,
        latency_ms: float,
        *,
        output: Any = None,
        error: str | None = None,
    ) -> None:
        if self._observer is None:
            return
        preview = "" if output is None else json.dumps(output, default=str)[:_PREVIEW_CHARS]
        self._observer(
            ToolTrace(
                tool_id=definition.id,
                name=definition.display_name,
                input_payload=arguments,
                status=status,
                latency_ms=latency_ms,
                output_preview=preview,
                error=error,
            )
        )


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def _validation_summary(exc: ValidationError) -> str:
    parts = []
    for item in exc.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "arguments"
        parts.append(f"{location}: {item.get('msg', 'invalid')}")
    return "; ".join(parts)


def _error_reason(exc: BaseException, timeout_seconds: float) -> str:
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return f"timed out after {timeout_seconds:g}s"
    return str(exc) or type(exc).__name__
