"""Streaming tool-call agent package."""

from .config import ReplayConfig, RetryConfig, ScannerConfig, StreamConfig

__all__ = ["ReplayConfig", "RetryConfig", "ScannerConfig", "StreamConfig"]
