"""Bounded retry with exponential backoff and jitter."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TypeVar

import httpx

from stream_agent.config import RetryConfig
from stream_agent.errors import RetryCancelledError, ToolBackendError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504, 529})


def is_transient_error(error: BaseException) -> bool:
    """Classify an error raised by a network-facing call."""
    if isinstance(error, ToolBackendError):
        return error.retryable
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in _RETRYABLE_STATUS
    if isinstance(error, (httpx.TransportError, TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True
    # SDK errors (openai, anthropic) expose the HTTP status directly.
    status_code = getattr(error, "status_code", None)
    return isinstance(status_code, int) and status_code in _RETRYABLE_STATUS


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 0.1
    max_delay: float = 2.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.1
    is_retryable: Callable[[BaseException], bool] = is_transient_error

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_config(
        cls,
        config: RetryConfig,
        is_retryable: Callable[[BaseException], bool] = is_transient_error,
    ) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            initial_delay=config.initial_delay_seconds,
            max_delay=config.max_delay_seconds,
            backoff_multiplier=config.backoff_multiplier,
            jitter=config.jitter,
            is_retryable=is_retryable,
        )

    def single_attempt(self) -> "RetryPolicy":
        return replace(self, max_attempts=1)

    def delay_after(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay to wait after failed attempt number `attempt` (1-based)."""
        factor = 1.0 + (rng or random).uniform(0.0, self.jitter) if self.jitter else 1.0
        raw = self.initial_delay * (self.backoff_multiplier ** (attempt - 1)) * factor
        return min(self.max_delay, raw)


async def retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    operation_name: str = "operation",
    correlation_id: str | None = None,
    cancel_event: asyncio.Event | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: random.Random | None = None,
) -> T:
    """Run `operation` until it succeeds, fails terminally, or attempts run out.

    Raises:
        RetryCancelledError: If `cancel_event` is set before an attempt.
        Exception: The last error from `operation` when it is not retryable
            or every attempt failed.
    """
    policy = policy or RetryPolicy()

    for attempt in range(1, policy.max_attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise RetryCancelledError(f"{operation_name} cancelled before attempt {attempt}")
        try:
            return await operation()
        except Exception as exc:
            if not policy.is_retryable(exc) or attempt == policy.max_attempts:
                raise
            delay = policy.delay_after(attempt, rng)
            logger.warning(
                "Retry %d/%d for %s (%s, backoff: %.2fs)",
                attempt,
                policy.max_attempts,
                operation_name,
                _short_reason(exc),
                delay,
                extra={"correlation_id": correlation_id, "operation": operation_name},
            )
            await sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover


def _short_reason(error: BaseException) -> str:
    if isinstance(error, httpx.HTTPStatusError):
        return f"HTTP {error.response.status_code}"
    text = str(error) or type(error).__name__
    return text[:80]
