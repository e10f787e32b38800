"""
Live channel WebSocket route.

  WS /stream  → {"type": "initial", "data": [recent events]} on connect,
                then every broadcast message until the client goes away.

Client → server messages are logged and otherwise ignored.
"""

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from agentobs.services.shared.database import SessionLocal
from agentobs.services.store.events import get_recent_events
from agentobs.services.ingest.routes_events import RECENT_EVENTS_LIMIT, event_to_wire

router = APIRouter()
logger = structlog.get_logger()


def _backlog() -> list[dict]:
    db = SessionLocal()
    try:
        return [event_to_wire(ev) for ev in get_recent_events(db, RECENT_EVENTS_LIMIT)]
    finally:
        db.close()


@router.websocket("/stream")
async def stream(websocket: WebSocket):
    await websocket.accept()
    broadcaster = websocket.app.state.broadcaster

    if not await broadcaster.register(websocket, greeting={"type": "initial", "data": _backlog()}):
        return

    try:
        while True:
            message = await websocket.receive_text()
            logger.debug("stream_client_message", size=len(message))
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.unregister(websocket)
