"""
Unit tests for HITL response delivery.
The WebSocket send is monkeypatched; no agent socket is needed.
"""

import asyncio
import json

from agentobs.services.ingest import hitl


def test_delivery_success(monkeypatch):
    sent = []

    async def fake_send(url, message):
        sent.append((url, json.loads(message)))

    monkeypatch.setattr(hitl, "_send", fake_send)
    ok = asyncio.run(hitl.deliver_hitl_response(7, "ws://agent:9000/hitl", {"response": "yes"}))

    assert ok is True
    assert sent == [("ws://agent:9000/hitl", {"response": "yes"})]


def test_delivery_failure_is_swallowed(monkeypatch):
    async def refused(url, message):
        raise ConnectionRefusedError("no agent listening")

    monkeypatch.setattr(hitl, "_send", refused)
    assert asyncio.run(hitl.deliver_hitl_response(7, "ws://agent:9000/hitl", {})) is False


def test_delivery_timeout(monkeypatch):
    async def hangs(url, message):
        await asyncio.sleep(5)

    monkeypatch.setattr(hitl, "_send", hangs)
    monkeypatch.setattr(hitl, "HITL_DELIVERY_TIMEOUT_SECONDS", 0.05)
    assert asyncio.run(hitl.deliver_hitl_response(7, "ws://agent:9000/hitl", {})) is False


def test_unreachable_url_fails_without_raising(monkeypatch):
    monkeypatch.setattr(hitl, "HITL_DELIVERY_TIMEOUT_SECONDS", 1.0)
    # Port 1 on localhost is not listening
    assert asyncio.run(hitl.deliver_hitl_response(7, "ws://127.0.0.1:1/hitl", {})) is False
