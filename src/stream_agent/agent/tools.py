"""Built-in tool implementations: flight search and calendar queries."""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

import httpx
from pydantic import BaseModel, Field, model_validator

from stream_agent.agent.registry import ToolDefinition, ToolRegistry
from stream_agent.errors import ToolBackendError

logger = logging.getLogger(__name__)

DUFFEL_API_BASE = "https://api.duffel.com"
DUFFEL_API_VERSION = "v2"

_ISO_DURATION = re.compile(r"PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?")
_RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})


class FlightSearchInput(BaseModel):
    origin: str = Field(pattern=r"^[A-Z]{3}$", description="IATA code (e.g., SFO)")
    destination: str = Field(pattern=r"^[A-Z]{3}$", description="IATA code (e.g., CDG)")
    departure_date: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$", description="YYYY-MM-DD")
    return_date: str | None = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    adults: int = Field(default=1, ge=1, le=9)
    children: int = Field(default=0, ge=0, le=9)
    cabin_class: Literal["economy", "premium_economy", "business", "first"] = "economy"
    max_connections: int = Field(default=2, ge=0, le=3)


class ListEventsInput(BaseModel):
    calendarId: str = "primary"
    timeMin: datetime
    timeMax: datetime
    maxResults: int = Field(default=25, ge=1, le=2500)
    singleEvents: bool = False
    orderBy: Literal["startTime", "updated"] = "updated"

    @model_validator(mode="after")
    def _check_range(self) -> "ListEventsInput":
        if _as_utc(self.timeMin) >= _as_utc(self.timeMax):
            raise ValueError("timeMin must be before timeMax")
        return self


def register_builtin_tools(
    registry: ToolRegistry,
    *,
    duffel_api_key: str | None = None,
    http_client: httpx.AsyncClient | None = None,
    timeout_seconds: float = 20.0,
) -> None:
    """Register the default tool set.

    Tools:
    - `search_flights`: Duffel offer request, mapped to flight options.
    - `list_events`: calendar events in a time range (stubbed backend).
    """

    async def _search_flights(input_data: FlightSearchInput) -> dict[str, Any]:
        if not duffel_api_key:
            raise ToolBackendError("DUFFEL_API_KEY is not configured", retryable=False)

        slices = [
            {
                "origin": input_data.origin,
                "destination": input_data.destination,
                "departure_date": input_data.departure_date,
            }
        ]
        if input_data.return_date:
            slices.append(
                {
                    "origin": input_data.destination,
                    "destination": input_data.origin,
                    "departure_date": input_data.return_date,
                }
            )
        passengers = [{"type": "adult"} for _ in range(input_data.adults)]
        passengers.extend({"type": "child", "age": 10} for _ in range(input_data.children))
        body = {
            "data": {
                "slices": slices,
                "passengers": passengers,
                "cabin_class": input_data.cabin_class,
                "max_connections": input_data.max_connections,
            }
        }
        headers = {
            "Authorization": f"Bearer {duffel_api_key}",
            "Duffel-Version": DUFFEL_API_VERSION,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

        client = http_client or httpx.AsyncClient(base_url=DUFFEL_API_BASE, timeout=timeout_seconds)
        try:
            response = await client.post(
                "/air/offer_requests",
                params={"return_offers": "true"},
                json=body,
                headers=headers,
            )
        finally:
            if http_client is None:
                await client.aclose()

        if response.status_code >= 400:
            logger.error(
                "Duffel API request failed",
                extra={
                    "status_code": response.status_code,
                    "origin": input_data.origin,
                    "destination": input_data.destination,
                },
            )
            raise ToolBackendError(
                f"Duffel API error: {response.status_code}",
                retryable=response.status_code in _RETRYABLE_STATUS,
                status_code=response.status_code,
            )

        offers = response.json().get("data", {}).get("offers", []) or []
        flights = [_map_offer(offer) for offer in offers if offer.get("slices")]
        logger.info(
            "Flight search completed",
            extra={
                "origin": input_data.origin,
                "destination": input_data.destination,
                "flight_count": len(flights),
            },
        )
        return {
            "status": "success",
            "data": flights,
            "meta": {
                "origin": input_data.origin,
                "destination": input_data.destination,
                "departure_date": input_data.departure_date,
                "count": len(flights),
            },
        }

    async def _list_events(input_data: ListEventsInput) -> dict[str, Any]:
        # Stubbed calendar backend; swap for a Google Calendar client.
        start = _as_utc(input_data.timeMin)
        now = datetime.now(timezone.utc).isoformat()
        events = [
            {
                "id": "evt_stub_001",
                "summary": "Team Standup",
                "description": "Daily sync with the team",
                "location": "Conference Room A",
                "start": {"dateTime": start.isoformat()},
                "end": {"dateTime": (start + timedelta(hours=1)).isoformat()},
                "created": now,
                "updated": now,
                "attendees": [
                    {"email": "user@company.com", "displayName": "You", "responseStatus": "accepted"},
                    {"email": "colleague@company.com", "displayName": "Colleague", "responseStatus": "accepted"},
                ],
            },
            {
                "id": "evt_stub_002",
                "summary": "Q1 Planning Meeting",
                "description": "Strategic planning for Q1",
                "location": "Virtual",
                "start": {"dateTime": (start + timedelta(hours=4)).isoformat()},
                "end": {"dateTime": (start + timedelta(hours=5, minutes=30)).isoformat()},
                "created": now,
                "updated": now,
                "attendees": [
                    {"email": "user@company.com", "displayName": "You", "responseStatus": "tentative"},
                ],
            },
        ]
        events = events[: input_data.maxResults]
        return {
            "status": "success",
            "data": events,
            "meta": {
                "calendarId": input_data.calendarId,
                "timeMin": input_data.timeMin.isoformat(),
                "timeMax": input_data.timeMax.isoformat(),
                "count": len(events),
            },
        }

    registry.register(
        ToolDefinition(
            id="flights-mcp::search-flights",
            display_name="search_flights",
            description="Search for available flights between origin and destination",
            args_schema=FlightSearchInput,
            handler=_search_flights,
        )
    )
    registry.register(
        ToolDefinition(
            id="google-calendar-mcp::list-events",
            display_name="list_events",
            description="Fetch calendar events within a date range",
            args_schema=ListEventsInput,
            handler=_list_events,
        )
    )


def iso_duration_minutes(duration: str) -> int:
    """Convert an ISO 8601 duration such as ``PT10H30M`` to minutes."""
    match = _ISO_DURATION.fullmatch(duration or "")
    if not match:
        return 0
    hours, minutes, seconds = (int(part) if part else 0 for part in match.groups())
    return hours * 60 + minutes + math.ceil(seconds / 60)


def _map_offer(offer: dict[str, Any]) -> dict[str, Any]:
    segments = offer["slices"][0]["segments"]
    first, last = segments[0], segments[-1]
    departure_at: str = first["departing_at"]
    arrival_at: str = last["arriving_at"]
    return {
        "id": offer["id"],
        "airline": first["operating_carrier"]["iata_code"],
        "airline_name": first["operating_carrier"]["name"],
        "flight_number": first.get("marketing_carrier_flight_number") or first.get("flight_number", ""),
        "origin": {"code": first["origin"]["iata_code"], "name": first["origin"]["name"]},
        "destination": {"code": last["destination"]["iata_code"], "name": last["destination"]["name"]},
        "departure": {"date": departure_at[:10], "time": departure_at[11:16], "datetime": departure_at},
        "arrival": {"date": arrival_at[:10], "time": arrival_at[11:16], "datetime": arrival_at},
        "duration_minutes": sum(iso_duration_minutes(seg.get("duration", "")) for seg in segments),
        "stops": len(segments) - 1,
        "direct": len(segments) == 1,
        "price": {"amount": float(offer["total_amount"]), "currency": offer["total_currency"]},
        "expires_at": offer.get("expires_at"),
    }


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
