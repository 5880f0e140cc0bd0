"""Exception types raised inside the engine."""

from __future__ import annotations


class StreamAgentError(Exception):
    """Base class for engine errors."""


class ToolBackendError(StreamAgentError):
    """A tool backend call failed.

    `retryable` tells the retrier whether another attempt may succeed
    (rate limits, transient upstream failures) or not (bad input, missing
    credentials).
    """

    def __init__(self, message: str, *, retryable: bool = False, status_code: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class RetryCancelledError(StreamAgentError):
    """Raised when the owning session is torn down between retry attempts."""
