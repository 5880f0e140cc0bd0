"""Deterministic chat stream used when no external LLM is configured."""

from __future__ import annotations

import json
import re
from collections.abc import AsyncIterator, Callable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

from stream_agent.types import ChatMessage

_TRAVEL_KEYWORDS = ("flight", "fly", "trip", "travel")
_PLANNING_KEYWORDS = ("schedule", "calendar", "agenda", "plan my day", "meetings")
_ORIGIN = re.compile(r"\bfrom ([A-Z]{3})\b")
_DESTINATION = re.compile(r"\bto ([A-Z]{3})\b")
_ISO_DATE = re.compile(r"\b\d{4}-\d{2}-\d{2}\b")
_CHUNK = re.compile(r"\S+\s*|\s+")


class DeterministicChatStream:
    """Answers from keyword rules and emits tool markers like a model would.

    This keeps the same streaming contract as `LangChainChatStream` and is
    useful for local/offline environments where `OPENAI_API_KEY` is not
    configured: travel questions naming two airport codes become a
    `search_flights` call, schedule questions a `list_events` call.
    """

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def stream(self, messages: Sequence[ChatMessage]) -> AsyncIterator[str]:
        question = next((m.content for m in reversed(messages) if m.role == "user"), "")
        for piece in _CHUNK.findall(self.respond(question)):
            yield piece

    def respond(self, question: str) -> str:
        lowered = question.lower()
        if any(keyword in lowered for keyword in _TRAVEL_KEYWORDS):
            args = _travel_args(question, self._clock())
            if args is not None:
                return (
                    f"Let me search flights from {args['origin']} to {args['destination']}. "
                    f"{_marker('search_flights', args)} "
                    "Those are the options I found."
                )
            return "Which airports and date should I search? For example: from SFO to CDG on 2025-05-10."

        if any(keyword in lowered for keyword in _PLANNING_KEYWORDS):
            day = self._clock().replace(hour=0, minute=0, second=0, microsecond=0)
            args = {
                "timeMin": day.isoformat(),
                "timeMax": (day + timedelta(days=1)).isoformat(),
            }
            return f"Checking your calendar. {_marker('list_events', args)} Here is your day."

        return "I can help with your calendar and travel. Ask me about your schedule or a flight."


def _travel_args(question: str, now: datetime) -> dict[str, Any] | None:
    origin = _ORIGIN.search(question)
    destination = _DESTINATION.search(question)
    if origin is None or destination is None:
        return None
    date = _ISO_DATE.search(question)
    departure = date.group(0) if date else (now + timedelta(days=7)).date().isoformat()
    return {
        "origin": origin.group(1),
        "destination": destination.group(1),
        "departure_date": departure,
    }


def _marker(name: str, args: dict[str, Any]) -> str:
    payload = json.dumps(args, separators=(",", ":"))
    return f'<tool_call name="{name}" args={payload}></tool_call>'
