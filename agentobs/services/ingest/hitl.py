"""
Human-in-the-loop response delivery.

When a human answers a HITL event, the answer is recorded first and then
pushed to the waiting agent over the WebSocket address it put in
humanInTheLoop.responseWebSocketUrl.

Delivery is a single attempt bounded by HITL_DELIVERY_TIMEOUT_SECONDS.
A failure is logged and nothing else: the event stays "responded"
because the response itself was durably stored.
"""

import asyncio
import json
import os
from typing import Any

import structlog
import websockets

logger = structlog.get_logger()

HITL_DELIVERY_TIMEOUT_SECONDS = float(os.getenv("HITL_DELIVERY_TIMEOUT_SECONDS", "5"))


async def _send(url: str, message: str) -> None:
    async with websockets.connect(url, open_timeout=HITL_DELIVERY_TIMEOUT_SECONDS) as ws:
        await ws.send(message)


async def deliver_hitl_response(event_id: int, url: str, response: dict[str, Any]) -> bool:
    """Send response to the requesting agent. Returns True if it was sent."""
    logger.info("hitl_delivery_started", event_id=event_id, url=url)
    try:
        await asyncio.wait_for(_send(url, json.dumps(response)), timeout=HITL_DELIVERY_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("hitl_delivery_timeout", event_id=event_id, url=url,
                       timeout_s=HITL_DELIVERY_TIMEOUT_SECONDS)
        return False
    except Exception as exc:
        logger.warning("hitl_delivery_failed", event_id=event_id, url=url, error=str(exc))
        return False
    logger.info("hitl_delivery_complete", event_id=event_id)
    return True
