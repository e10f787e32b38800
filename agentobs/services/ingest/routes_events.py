"""
Hook event routes.
Used by:
  - agent hook producers                      POST /events
  - dashboard clients (initial load, filters) GET  /events/recent, /events/filter-options
  - dashboard HITL panel                      POST /events/{id}/respond
"""

import os
from typing import Any

import structlog
from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Query

from agentobs.services.shared.database import get_db
from agentobs.services.shared.models import Event, now_ms
from agentobs.services.shared.schemas import FilterOptions, HookEventCreate, HookEventOut, to_wire
from agentobs.services.store.events import (
    HITLAlreadyResolved, expire_stale_hitl, get_filter_options, get_recent_events,
    insert_event, update_event_hitl_response,
)
from agentobs.services.ingest.broadcaster import Broadcaster, get_broadcaster
from agentobs.services.ingest.hitl import deliver_hitl_response

router = APIRouter()
logger = structlog.get_logger()

RECENT_EVENTS_LIMIT = int(os.getenv("RECENT_EVENTS_LIMIT", "300"))


def event_to_wire(ev: Event) -> dict[str, Any]:
    """Stored event as sent over HTTP and the live channel (unset optionals omitted)."""
    return to_wire(HookEventOut.model_validate(ev), exclude_none=True)


@router.post("/events")
async def ingest_event(
    req: HookEventCreate,
    db=Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """
    Accept one hook event from an agent. The payload is stored verbatim.
    The stored event (with id and timestamp) is broadcast and returned.
    """
    ev = insert_event(db, req)
    out = event_to_wire(ev)
    await broadcaster.broadcast({"type": "event", "data": out})

    logger.info(
        "event_ingested",
        event_id=ev.id,
        source_app=ev.source_app,
        session_id=ev.session_id,
        hook_event_type=ev.hook_event_type,
        hitl=ev.human_in_the_loop is not None,
    )
    return out


async def _expire_and_broadcast(db, broadcaster: Broadcaster) -> None:
    """Time out overdue HITL requests and push each changed event to live clients."""
    for ev in expire_stale_hitl(db):
        await broadcaster.broadcast({"type": "event", "data": event_to_wire(ev)})


@router.get("/events/recent")
async def list_recent_events(
    limit: int = Query(default=RECENT_EVENTS_LIMIT, ge=0),
    db=Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """Most recent events, oldest first. Pending HITL requests past their timeout are expired first."""
    await _expire_and_broadcast(db, broadcaster)
    return [event_to_wire(ev) for ev in get_recent_events(db, limit)]


@router.get("/events/filter-options", response_model=FilterOptions)
def filter_options(db=Depends(get_db)):
    return FilterOptions(**get_filter_options(db))


@router.post("/events/{event_id}/respond")
async def respond_to_event(
    event_id: int,
    background_tasks: BackgroundTasks,
    response: dict[str, Any] = Body(...),
    db=Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """
    Record a human response to a HITL event and broadcast the updated event.
    The response is then pushed to the waiting agent in the background;
    delivery failures are logged and never fail this request.
    """
    response["respondedAt"] = now_ms()

    await _expire_and_broadcast(db, broadcaster)
    try:
        ev = update_event_hitl_response(db, event_id, response)
    except HITLAlreadyResolved as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if ev is None:
        raise HTTPException(status_code=404, detail="Event not found")

    out = event_to_wire(ev)
    await broadcaster.broadcast({"type": "event", "data": out})

    url = (ev.human_in_the_loop or {}).get("responseWebSocketUrl")
    if url:
        background_tasks.add_task(deliver_hitl_response, ev.id, url, response)

    logger.info("hitl_response_recorded", event_id=ev.id, delivery_scheduled=bool(url))
    return out
