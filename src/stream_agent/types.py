"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class ChatMessage:
    """One message of the conversation sent to the model."""

    role: str
    content: str


@dataclass(frozen=True, slots=True)
class TextDelta:
    """Plain text recognised outside of any tool-call marker."""

    text: str


@dataclass(frozen=True, slots=True)
class ToolCallRecord:
    """A complete tool-call marker extracted from the token stream."""

    name: str
    arguments: Any


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed tool call."""

    tool_id: str
    name: str
    input_payload: Any
    status: str
    latency_ms: float
    output_preview: str = ""
    error: str | None = None


@dataclass(slots=True)
class TurnRecord:
    """One completed chat turn handed to the persistence collaborator."""

    session_id: str
    correlation_id: str
    user_message: str
    assistant_transcript: str
    message_id: str = ""
