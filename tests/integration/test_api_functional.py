import uuid

from fastapi.testclient import TestClient

from stream_agent.protocol.events import DoneEvent, decode_frames


def _client() -> TestClient:
    # Import after environment setup to use the deterministic chat stream.
    from stream_agent.api import main

    main._llm = None
    return TestClient(main.app)


def _ask(question: str, **extra: object) -> dict[str, object]:
    return {"messages": [{"role": "user", "content": question}], **extra}


def test_streaming_chat_runs_tool_and_records_trace() -> None:
    client = _client()

    resp = client.post(
        "/chat",
        json=_ask("What is on my calendar today?"),
        headers={"X-Correlation-ID": "corr-123"},
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["x-correlation-id"] == "corr-123"

    events = decode_frames(resp.content)
    types = [event.type for event in events]
    assert types.count("done") == 1
    assert types[-1] == "done"
    call_index = types.index("tool_call")
    assert events[call_index].name == "list_events"
    assert types[call_index + 1] == "tool_result"
    assert "<tool_call" not in "".join(event.token for event in events if event.type == "token")

    trace_resp = client.get(f"/traces/{events[-1].message_id}")
    assert trace_resp.status_code == 200
    trace = trace_resp.json()
    assert trace["correlation_id"] == "corr-123"
    assert trace["tool_traces"][0]["name"] == "list_events"
    assert trace["tool_traces"][0]["status"] == "ok"


def test_batch_chat_returns_message_and_events() -> None:
    client = _client()

    resp = client.post("/chat", json=_ask("hello there", stream=False))
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["message"].startswith("I can help with your calendar")
    assert payload["events"][-1] == {"type": "done", "message_id": payload["message_id"]}


def test_flight_search_without_credentials_reports_tool_error() -> None:
    client = _client()

    resp = client.post("/chat", json=_ask("Find a flight from SFO to CDG on 2025-05-10", stream=False))
    assert resp.status_code == 200
    events = resp.json()["events"]
    types = [event["type"] for event in events]
    call_index = types.index("tool_call")
    assert events[call_index]["name"] == "search_flights"
    assert events[call_index]["args"]["origin"] == "SFO"
    assert events[call_index + 1] == {"type": "error", "error": "Tool error: DUFFEL_API_KEY is not configured"}
    assert types[-1] == "done"


def test_idempotency_key_replays_completed_response() -> None:
    client = _client()
    key = str(uuid.uuid4())
    headers = {"Idempotency-Key": key}

    first = client.post("/chat", json=_ask("plan my day", stream=False), headers=headers)
    second = client.post("/chat", json=_ask("plan my day", stream=False), headers=headers)
    assert first.status_code == second.status_code == 200
    assert second.json() == first.json()
    assert second.headers["idempotent-replay"] == "true"

    streamed = client.post("/chat", json=_ask("plan my day"), headers=headers)
    events = decode_frames(streamed.content)
    assert all(event.type == "token" for event in events[:-1])
    assert "".join(event.token for event in events[:-1]) == first.json()["message"]
    assert events[-1] == DoneEvent(message_id=first.json()["message_id"])

    metrics = client.get("/metrics").json()
    assert metrics["replayed_sessions"] >= 2


def test_chat_requires_user_message() -> None:
    client = _client()

    resp = client.post("/chat", json={"messages": [{"role": "assistant", "content": "hi"}]})
    assert resp.status_code == 400

    resp = client.post("/chat", json={"messages": []})
    assert resp.status_code == 422


def test_health_traces_and_metrics() -> None:
    client = _client()
    client.post("/chat", json=_ask("hello", stream=False))

    health = client.get("/health").json()
    assert health["status"] == "ok"
    assert health["stream_mode"] == "deterministic"
    assert set(health["tools"]) == {"search_flights", "list_events"}

    assert client.get("/traces?limit=5").json()["items"]
    assert client.get("/traces/does-not-exist").status_code == 404

    metrics = client.get("/metrics").json()
    assert metrics["total_sessions"] >= 1
    assert metrics["avg_latency_ms"] >= 0.0
