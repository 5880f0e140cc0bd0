import json

import httpx
import pytest

from stream_agent.agent.registry import ToolRegistry
from stream_agent.agent.tools import DUFFEL_API_BASE, register_builtin_tools
from stream_agent.errors import ToolBackendError

_OFFER = {
    "id": "off_1",
    "total_amount": "432.10",
    "total_currency": "EUR",
    "expires_at": "2025-05-01T12:00:00Z",
    "slices": [
        {
            "segments": [
                {
                    "departing_at": "2025-05-10T08:15:00",
                    "arriving_at": "2025-05-10T12:00:00",
                    "duration": "PT3H45M",
                    "marketing_carrier_flight_number": "123",
                    "operating_carrier": {"iata_code": "AF", "name": "Air France"},
                    "origin": {"iata_code": "SFO", "name": "San Francisco"},
                    "destination": {"iata_code": "JFK", "name": "New York JFK"},
                },
                {
                    "departing_at": "2025-05-10T14:00:00",
                    "arriving_at": "2025-05-11T03:30:00",
                    "duration": "PT7H30M",
                    "operating_carrier": {"iata_code": "AF", "name": "Air France"},
                    "origin": {"iata_code": "JFK", "name": "New York JFK"},
                    "destination": {"iata_code": "CDG", "name": "Paris CDG"},
                },
            ]
        }
    ],
}


def _flights(handler, api_key: str | None = "test-key"):
    client = httpx.AsyncClient(base_url=DUFFEL_API_BASE, transport=httpx.MockTransport(handler))
    registry = ToolRegistry()
    register_builtin_tools(registry, duffel_api_key=api_key, http_client=client)
    definition = registry.lookup("search_flights")
    args = definition.validate_arguments(
        {"origin": "SFO", "destination": "CDG", "departure_date": "2025-05-10", "return_date": "2025-05-20"}
    )
    return definition, args


@pytest.mark.asyncio
async def test_search_flights_maps_offers() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"data": {"offers": [_OFFER]}})

    definition, args = _flights(_handler)
    result = await definition.handler(args)

    request = seen[0]
    assert request.url.path == "/air/offer_requests"
    assert request.url.params["return_offers"] == "true"
    assert request.headers["Authorization"] == "Bearer test-key"
    body = json.loads(request.content)
    assert [s["origin"] for s in body["data"]["slices"]] == ["SFO", "CDG"]

    flight = result["data"][0]
    assert result["meta"]["count"] == 1
    assert flight["airline"] == "AF"
    assert flight["origin"]["code"] == "SFO"
    assert flight["destination"]["code"] == "CDG"
    assert flight["departure"]["time"] == "08:15"
    assert flight["stops"] == 1
    assert flight["duration_minutes"] == 675
    assert flight["price"] == {"amount": 432.10, "currency": "EUR"}


@pytest.mark.asyncio
@pytest.mark.parametrize(("status", "retryable"), [(429, True), (503, True), (422, False)])
async def test_search_flights_error_statuses(status: int, retryable: bool) -> None:
    definition, args = _flights(lambda request: httpx.Response(status, json={"errors": []}))

    with pytest.raises(ToolBackendError) as excinfo:
        await definition.handler(args)

    assert excinfo.value.status_code == status
    assert excinfo.value.retryable is retryable


@pytest.mark.asyncio
async def test_search_flights_without_key_is_terminal() -> None:
    definition, args = _flights(lambda request: httpx.Response(500), api_key=None)

    with pytest.raises(ToolBackendError) as excinfo:
        await definition.handler(args)

    assert excinfo.value.retryable is False


@pytest.mark.asyncio
async def test_list_events_respects_max_results() -> None:
    registry = ToolRegistry()
    register_builtin_tools(registry)
    definition = registry.lookup("list_events")
    args = definition.validate_arguments(
        {"timeMin": "2025-05-01T00:00:00Z", "timeMax": "2025-05-02T00:00:00Z", "maxResults": 1}
    )

    result = await definition.handler(args)

    assert result["meta"]["count"] == 1
    assert result["data"][0]["summary"] == "Team Standup"
    assert result["data"][0]["start"]["dateTime"].startswith("2025-05-01T00:00:00")
