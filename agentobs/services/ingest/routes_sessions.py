"""
Session routes.

Session lifecycle:
  POST /api/sessions              → create, or merge fields into an existing session
  POST /api/sessions/{id}/agents  → record an agent taking part in the session
  GET  /api/sessions              → list (newest first, optional ?status=)
  GET  /api/sessions/{id}         → one session with its aggregates

A session is terminal once its status leaves "running".
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query

from agentobs.services.shared.database import get_db
from agentobs.services.shared.schemas import AgentAdd, SessionOut, SessionUpsert, to_wire
from agentobs.services.store.metrics import (
    SessionAlreadyEnded, add_agent_to_session, get_session, get_sessions, upsert_session,
)
from agentobs.services.ingest.broadcaster import Broadcaster, get_broadcaster

router = APIRouter()
logger = structlog.get_logger()


@router.post("/sessions")
async def create_or_update_session(
    req: SessionUpsert,
    db=Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    try:
        sess = upsert_session(db, req)
    except SessionAlreadyEnded as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    out = to_wire(SessionOut.model_validate(sess))
    await broadcaster.broadcast({"type": "session_update", "data": out})
    return out


@router.get("/sessions", response_model=list[SessionOut])
def list_sessions(
    status: Optional[str] = None,
    limit:  int           = Query(default=50, ge=1, le=500),
    db=Depends(get_db),
):
    return [SessionOut.model_validate(s) for s in get_sessions(db, status, limit)]


@router.get("/sessions/{session_id}", response_model=SessionOut)
def get_session_by_id(session_id: str, db=Depends(get_db)):
    sess = get_session(db, session_id)
    if not sess:
        raise HTTPException(status_code=404, detail="Session not found")
    return SessionOut.model_validate(sess)


@router.post("/sessions/{session_id}/agents")
async def add_session_agent(
    session_id: str,
    req: AgentAdd,
    db=Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    sess = add_agent_to_session(db, session_id, req.agent_name)
    if sess is None:
        raise HTTPException(status_code=404, detail="Session not found")
    out = to_wire(SessionOut.model_validate(sess))
    await broadcaster.broadcast({"type": "session_update", "data": out})
    logger.info("session_agent_added", session_id=session_id, agent_name=req.agent_name)
    return out
