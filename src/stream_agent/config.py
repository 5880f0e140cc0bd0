"""Configuration models for the streaming engine."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator


class ScannerConfig(BaseModel):
    """Configures tool-call marker recognition in the token stream."""

    tags: tuple[str, ...] = Field(default=("tool_call", "call"), min_length=1)
    max_marker_chars: int = Field(default=16_384, ge=64)


class RetryConfig(BaseModel):
    """Configures exponential backoff for network-facing calls."""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay_seconds: float = Field(default=0.1, ge=0.0)
    max_delay_seconds: float = Field(default=2.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.1, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_delays(self) -> "RetryConfig":
        if self.max_delay_seconds < self.initial_delay_seconds:
            raise ValueError("max_delay_seconds must be >= initial_delay_seconds")
        return self


class StreamConfig(BaseModel):
    """Configures one streaming chat session."""

    tool_timeout_seconds: float = Field(default=30.0, gt=0.0)
    max_pending_segments: int = Field(default=256, ge=1)
    replay_chunk_chars: int = Field(default=128, ge=1)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)


class ReplayConfig(BaseModel):
    """Configures the idempotent replay cache."""

    scope: str = Field(default="chat:POST", min_length=1)
    ttl_seconds: int = Field(default=60 * 60 * 24, ge=1)
    capacity: int = Field(default=1024, ge=1)
