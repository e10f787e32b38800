"""
Live fan-out channel for dashboard clients.

Every successful write in the ingest API broadcasts one message
{"type": <kind>, "data": <row>} to every connected client.

Ordering: broadcasts and registrations run under one asyncio.Lock, so
  - messages are sent in the order the writes reached broadcast()
  - a new client receives its "initial" backlog before any live message
Delivery is best-effort: a client whose send fails, or does not complete
within STREAM_SEND_TIMEOUT_SECONDS, is dropped, never queued.
"""

import asyncio
import json
import os
from typing import Any, Optional, Protocol

import structlog
from fastapi import Request

logger = structlog.get_logger()

STREAM_SEND_TIMEOUT_SECONDS = float(os.getenv("STREAM_SEND_TIMEOUT_SECONDS", "2"))

MESSAGE_TYPES = (
    "initial", "event", "token_update", "tool_update",
    "finding_update", "wstg_update", "session_update",
)


class Client(Protocol):
    async def send_text(self, data: str) -> None: ...


async def _send(client: Client, data: str) -> None:
    # A client that stops reading must not hold the lock
    await asyncio.wait_for(client.send_text(data), timeout=STREAM_SEND_TIMEOUT_SECONDS)


class Broadcaster:
    """Registry of connected clients plus a sequential send loop."""

    def __init__(self) -> None:
        self._clients: set[Client] = set()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._clients)

    @property
    def clients(self) -> frozenset:
        return frozenset(self._clients)

    async def register(self, client: Client, greeting: Optional[dict[str, Any]] = None) -> bool:
        """
        Add a client. If greeting is given it is sent first, under the lock,
        so no live message can overtake it. Returns False if the greeting
        could not be delivered (client not registered).
        """
        async with self._lock:
            if greeting is not None:
                try:
                    await _send(client, json.dumps(greeting))
                except Exception as exc:
                    logger.debug("stream_greeting_failed", error=str(exc) or type(exc).__name__)
                    return False
            self._clients.add(client)
        logger.info("stream_client_connected", clients=len(self._clients))
        return True

    def unregister(self, client: Client) -> None:
        if client in self._clients:
            self._clients.discard(client)
            logger.info("stream_client_disconnected", clients=len(self._clients))

    async def broadcast(self, message: dict[str, Any]) -> int:
        """Send message to every client. Returns how many sends succeeded."""
        if message.get("type") not in MESSAGE_TYPES:
            logger.warning("stream_unknown_message_type", type=message.get("type"))
        wire = json.dumps(message)
        delivered = 0
        async with self._lock:
            dead = []
            for client in list(self._clients):
                try:
                    await _send(client, wire)
                    delivered += 1
                except Exception as exc:
                    dead.append(client)
                    logger.debug("stream_client_pruned", error=str(exc) or type(exc).__name__)
            for client in dead:
                self._clients.discard(client)
        return delivered


def get_broadcaster(request: Request) -> Broadcaster:
    """FastAPI dependency: the app-wide broadcaster (overridable in tests)."""
    return request.app.state.broadcaster
