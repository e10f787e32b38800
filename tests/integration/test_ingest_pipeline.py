"""
Integration test: hook event + metrics pipeline against a running server.
Requires: agentobs-server (listening on localhost:4000)

Flow:
1. POST a session and a tagged hook event
2. POST token, tool, finding and WSTG metrics for the same session
3. GET the session and the dashboard - assert the rollups match

Run with: pytest tests/integration/ -v -m integration
"""

import uuid

import httpx
import pytest

SERVER_URL = "http://localhost:4000"


def _server_running() -> bool:
    try:
        return httpx.get(f"{SERVER_URL}/health", timeout=2.0).status_code == 200
    except httpx.HTTPError:
        return False


@pytest.mark.integration
def test_ingest_pipeline_end_to_end():
    """Session, event and metrics in → session rollups and dashboard out."""
    if not _server_running():
        pytest.skip("Server not running. Start with: agentobs-server")

    session_id = f"it-{uuid.uuid4().hex[:12]}"

    with httpx.Client(base_url=SERVER_URL, timeout=5.0) as http:
        r = http.post("/api/sessions", json={"session_id": session_id, "client_name": "integration"})
        assert r.status_code == 200, r.text

        r = http.post("/events", json={
            "source_app": "integration-agent",
            "session_id": session_id,
            "hook_event_type": "PreToolUse",
            "payload": {"tool_name": "Bash", "tool_input": {"command": "nmap -sV target"}},
        })
        assert r.status_code == 200, r.text
        event_id = r.json()["id"]

        http.post("/api/metrics/tokens", json={"session_id": session_id, "source_app": "integration-agent",
                                               "input_tokens": 1000, "output_tokens": 200,
                                               "estimated_cost": 0.05}).raise_for_status()
        http.post("/api/metrics/tools", json={"session_id": session_id, "source_app": "integration-agent",
                                              "tool_name": "nmap", "status": "success",
                                              "duration_ms": 3000}).raise_for_status()
        http.post("/api/metrics/findings", json={"session_id": session_id, "source_app": "integration-agent",
                                                 "finding_id": f"{session_id}-F1",
                                                 "vulnerability_type": "open_port",
                                                 "severity": "info"}).raise_for_status()
        http.post("/api/metrics/wstg", json={"session_id": session_id, "source_app": "integration-agent",
                                             "wstg_id": "WSTG-INFO-02",
                                             "status": "executed"}).raise_for_status()

        recent = http.get("/events/recent").json()
        assert event_id in [e["id"] for e in recent]

        session = http.get(f"/api/sessions/{session_id}").json()
        assert session["total_tokens"] == 1200
        assert session["total_tool_calls"] == 1
        assert session["total_findings"] == 1
        assert session["wstg_coverage_pct"] == pytest.approx(100.0)

        dash = http.get("/api/metrics/dashboard", params={"session_id": session_id}).json()
        assert dash["tokens"]["total_tokens"] == 1200
        assert dash["tools"][0]["tool_name"] == "nmap"

        r = http.post("/api/sessions", json={"session_id": session_id, "status": "completed"})
        assert r.json()["status"] == "completed"
        assert r.json()["duration_ms"] is not None
