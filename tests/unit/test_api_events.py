"""
API tests for the hook event routes, the error envelope and CORS.
Runs the FastAPI app in-process with TestClient against in-memory SQLite.
"""

import pytest

from agentobs.services.ingest import routes_events


def event_body(**overrides) -> dict:
    body = {
        "source_app":      "agentA",
        "session_id":      "s1",
        "hook_event_type": "PreToolUse",
        "payload":         {"tool_name": "Bash", "tool_input": {"command": "ls"}},
    }
    body.update(overrides)
    return body


def hitl_event(client, **hitl_overrides) -> dict:
    hitl = {"question": "Allow rm?", "type": "permission",
            "responseWebSocketUrl": "ws://localhost:9999/hitl"}
    hitl.update(hitl_overrides)
    return client.post("/events", json=event_body(humanInTheLoop=hitl)).json()


# ── POST /events ──────────────────────────────────────────────────────────────

def test_post_event_broadcasts_to_stream(client):
    with client.websocket_connect("/stream") as ws:
        initial = ws.receive_json()
        assert initial == {"type": "initial", "data": []}

        resp = client.post("/events", json=event_body(payload={"tool_name": "Bash"}))
        assert resp.status_code == 200
        stored = resp.json()
        assert isinstance(stored["id"], int)
        assert isinstance(stored["timestamp"], int)
        assert stored["payload"] == {"tool_name": "Bash"}

        message = ws.receive_json()
        assert message["type"] == "event"
        assert message["data"]["id"] == stored["id"]
        assert message["data"] == stored


def test_post_event_unset_optionals_omitted(client):
    stored = client.post("/events", json=event_body()).json()
    assert "chat" not in stored
    assert "humanInTheLoop" not in stored
    assert "humanInTheLoopStatus" not in stored


def test_post_event_ignores_unknown_keys(client):
    resp = client.post("/events", json=event_body(extra_field="ignored"))
    assert resp.status_code == 200
    assert "extra_field" not in resp.json()


def test_hitl_event_wire_names(client):
    stored = hitl_event(client)
    assert stored["humanInTheLoop"]["question"] == "Allow rm?"
    assert stored["humanInTheLoopStatus"] == {"status": "pending"}


@pytest.mark.parametrize("missing", ["source_app", "session_id", "hook_event_type", "payload"])
def test_missing_field_rejected_without_broadcast(fake_broadcaster, client, missing):
    body = event_body()
    del body[missing]

    resp = client.post("/events", json=body)

    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing required fields"}
    assert fake_broadcaster.messages == []
    assert client.get("/events/recent").json() == []


def test_empty_string_counts_as_missing(client):
    resp = client.post("/events", json=event_body(session_id=""))
    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing required fields"}


def test_null_payload_counts_as_missing(client):
    resp = client.post("/events", json=event_body(payload=None))
    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing required fields"}


def test_invalid_json_rejected(client):
    resp = client.post("/events", content=b"{not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["error"].startswith("Invalid request")


def test_wrong_type_rejected(client):
    resp = client.post("/events", json=event_body(timestamp="yesterday"))
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid request: timestamp"}


# ── GET /events/recent ────────────────────────────────────────────────────────

def test_recent_events_limit_and_order(client):
    for ts in (1000, 3000, 2000, 4000):
        client.post("/events", json=event_body(timestamp=ts))

    events = client.get("/events/recent", params={"limit": 3}).json()
    assert [e["timestamp"] for e in events] == [2000, 3000, 4000]


def test_recent_events_expires_stale_hitl(client):
    client.post("/events", json=event_body(
        timestamp=1_000,
        humanInTheLoop={"question": "?", "type": "question", "timeout": 1},
    ))
    events = client.get("/events/recent").json()
    assert events[0]["humanInTheLoopStatus"] == {"status": "timeout"}


def test_expired_hitl_is_broadcast(fake_broadcaster, client):
    stored = client.post("/events", json=event_body(
        timestamp=1_000,
        humanInTheLoop={"question": "?", "type": "question", "timeout": 1},
    )).json()

    client.get("/events/recent")
    client.get("/events/recent")  # already expired, nothing new to send

    assert fake_broadcaster.types == ["event", "event"]
    update = fake_broadcaster.messages[-1]["data"]
    assert update["id"] == stored["id"]
    assert update["humanInTheLoopStatus"] == {"status": "timeout"}


def test_json_fields_round_trip_with_nested_nulls(client):
    payload = {"tool_name": "Edit", "tool_input": {"a": None, "b": [None, {"c": None}], "d": ""}}
    chat = [{"role": "assistant", "content": None, "tool_calls": []}]
    hitl = {"question": "ok?", "type": "question", "choices": None, "context": {"x": None}}

    with client.websocket_connect("/stream") as ws:
        ws.receive_json()
        stored = client.post("/events", json=event_body(payload=payload, chat=chat, humanInTheLoop=hitl)).json()
        broadcast = ws.receive_json()["data"]

    recent = client.get("/events/recent").json()[-1]
    for ev in (stored, broadcast, recent):
        assert ev["payload"] == payload
        assert ev["chat"] == chat
        assert ev["humanInTheLoop"] == hitl


# ── GET /events/filter-options ────────────────────────────────────────────────

def test_filter_options(client):
    client.post("/events", json=event_body(source_app="b", session_id="s2", hook_event_type="Stop"))
    client.post("/events", json=event_body(source_app="a", session_id="s1"))

    assert client.get("/events/filter-options").json() == {
        "source_apps":      ["a", "b"],
        "session_ids":      ["s1", "s2"],
        "hook_event_types": ["PreToolUse", "Stop"],
    }


# ── POST /events/{id}/respond ─────────────────────────────────────────────────

def test_respond_unknown_event(client):
    resp = client.post("/events/999/respond", json={"response": "yes"})
    assert resp.status_code == 404
    assert resp.json() == {"error": "Event not found"}


def test_respond_records_and_schedules_delivery(client, monkeypatch):
    delivered = []

    async def fake_deliver(event_id, url, response):
        delivered.append((event_id, url, response))
        return True

    monkeypatch.setattr(routes_events, "deliver_hitl_response", fake_deliver)
    ev = hitl_event(client)

    with client.websocket_connect("/stream") as ws:
        ws.receive_json()  # initial
        resp = client.post(f"/events/{ev['id']}/respond", json={"response": "approved", "permission": True})
        assert resp.status_code == 200
        status = resp.json()["humanInTheLoopStatus"]
        assert status["status"] == "responded"
        assert isinstance(status["respondedAt"], int)
        assert status["response"]["response"] == "approved"

        message = ws.receive_json()
        assert message["type"] == "event"
        assert message["data"]["humanInTheLoopStatus"]["status"] == "responded"

    assert len(delivered) == 1
    event_id, url, response = delivered[0]
    assert (event_id, url) == (ev["id"], "ws://localhost:9999/hitl")
    assert response["permission"] is True


def test_respond_survives_delivery_failure(client, monkeypatch):
    async def failing_deliver(event_id, url, response):
        return False

    monkeypatch.setattr(routes_events, "deliver_hitl_response", failing_deliver)
    ev = hitl_event(client)

    resp = client.post(f"/events/{ev['id']}/respond", json={"response": "yes"})
    assert resp.status_code == 200
    recent = client.get("/events/recent").json()
    assert recent[0]["humanInTheLoopStatus"]["status"] == "responded"


def test_respond_without_callback_url(client, monkeypatch):
    delivered = []

    async def fake_deliver(*args):
        delivered.append(args)

    monkeypatch.setattr(routes_events, "deliver_hitl_response", fake_deliver)
    ev = hitl_event(client, responseWebSocketUrl=None)

    assert client.post(f"/events/{ev['id']}/respond", json={"response": "ok"}).status_code == 200
    assert delivered == []


def test_second_response_rejected(client, monkeypatch):
    async def fake_deliver(*args):
        return True

    monkeypatch.setattr(routes_events, "deliver_hitl_response", fake_deliver)
    ev = hitl_event(client)

    assert client.post(f"/events/{ev['id']}/respond", json={"response": "yes"}).status_code == 200
    resp = client.post(f"/events/{ev['id']}/respond", json={"response": "no"})
    assert resp.status_code == 400
    assert "already responded" in resp.json()["error"]


# ── Envelope / CORS ───────────────────────────────────────────────────────────

def test_options_answers_empty_200(client):
    resp = client.options("/events", headers={"Origin": "http://dashboard.local"})
    assert resp.status_code == 200
    assert resp.content == b""
    assert resp.headers["access-control-allow-origin"] == "*"


def test_cors_preflight(client):
    resp = client.options("/api/metrics/tokens", headers={
        "Origin": "http://dashboard.local",
        "Access-Control-Request-Method": "POST",
    })
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "*"


def test_unknown_route_is_json_404(client):
    resp = client.get("/nope")
    assert resp.status_code == 404
    assert "error" in resp.json()


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"
