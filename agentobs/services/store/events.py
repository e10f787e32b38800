"""
Hook event store.

Events are append-only. The only mutation is the HITL status transition:
  pending → responded   (POST /events/{id}/respond)
  pending → timeout     (lazy expiry once humanInTheLoop.timeout has elapsed)
A resolved status never changes again.
"""

from typing import Any, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from agentobs.services.shared.models import Event, HITLStatus, now_ms
from agentobs.services.shared.schemas import HookEventCreate

logger = structlog.get_logger()

FILTER_SESSION_LIMIT = 300


class HITLAlreadyResolved(ValueError):
    """Raised when responding to a HITL request that is no longer pending."""

    def __init__(self, event_id: int, status: str):
        super().__init__(f"HITL request for event {event_id} is already {status}")
        self.event_id = event_id
        self.status = status


def _hitl_state(ev: Event) -> Optional[str]:
    status = ev.human_in_the_loop_status
    if isinstance(status, dict):
        return status.get("status")
    return None


def insert_event(db: Session, req: HookEventCreate) -> Event:
    hitl_status = req.human_in_the_loop_status
    if req.human_in_the_loop and not hitl_status:
        hitl_status = {"status": HITLStatus.pending.value}

    ev = Event(
        source_app=req.source_app,
        session_id=req.session_id,
        hook_event_type=req.hook_event_type,
        payload=req.payload,
        chat=req.chat,
        summary=req.summary or None,
        timestamp=req.timestamp or now_ms(),
        model_name=req.model_name or None,
        human_in_the_loop=req.human_in_the_loop,
        human_in_the_loop_status=hitl_status,
    )
    db.add(ev)
    db.commit()
    db.refresh(ev)
    return ev


def get_recent_events(db: Session, limit: int = 300) -> list[Event]:
    """Most recent `limit` events, returned oldest → newest."""
    rows = (
        db.query(Event)
        .order_by(Event.timestamp.desc(), Event.id.desc())
        .limit(max(limit, 0))
        .all()
    )
    rows.reverse()
    return rows


def get_event(db: Session, event_id: int) -> Optional[Event]:
    return db.query(Event).filter(Event.id == event_id).first()


def update_event_hitl_response(db: Session, event_id: int, response: dict[str, Any]) -> Optional[Event]:
    """
    Record a human response. Returns None if the event does not exist.
    response["respondedAt"] is stamped by the caller (ingest route).
    """
    ev = get_event(db, event_id)
    if ev is None:
        return None

    current = _hitl_state(ev)
    if current is not None and current != HITLStatus.pending.value:
        raise HITLAlreadyResolved(event_id, current)

    ev.human_in_the_loop_status = {
        "status": HITLStatus.responded.value,
        "respondedAt": response.get("respondedAt", now_ms()),
        "response": response,
    }
    db.commit()
    db.refresh(ev)
    return ev


def expire_stale_hitl(db: Session, now: Optional[int] = None) -> list[Event]:
    """
    Mark pending HITL requests past their timeout as timed out (lazy expiry).
    Only requests carrying a positive humanInTheLoop.timeout (seconds) expire.
    Returns the expired events so callers can broadcast the change.
    """
    now = now or now_ms()
    pending = (
        db.query(Event)
        .filter(Event.human_in_the_loop.is_not(None))
        .filter(Event.human_in_the_loop_status["status"].as_string() == HITLStatus.pending.value)
        .filter(Event.timestamp < now)
        .all()
    )
    expired = []
    for ev in pending:
        timeout = (ev.human_in_the_loop or {}).get("timeout")
        if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0:
            continue
        if ev.timestamp + int(timeout * 1000) <= now:
            ev.human_in_the_loop_status = {"status": HITLStatus.timeout.value}
            expired.append(ev)
    if expired:
        db.commit()
        for ev in expired:
            db.refresh(ev)
        logger.info("hitl_requests_expired", count=len(expired))
    return expired


def get_filter_options(db: Session) -> dict[str, list[str]]:
    source_apps = [r[0] for r in db.query(Event.source_app).distinct().all()]
    hook_event_types = [r[0] for r in db.query(Event.hook_event_type).distinct().all()]

    # 300 most recently active sessions
    last_seen = func.max(Event.timestamp)
    session_ids = [
        r[0] for r in (
            db.query(Event.session_id, last_seen)
            .group_by(Event.session_id)
            .order_by(last_seen.desc(), Event.session_id)
            .limit(FILTER_SESSION_LIMIT)
            .all()
        )
    ]

    return {
        "source_apps":      sorted(source_apps),
        "session_ids":      sorted(session_ids),
        "hook_event_types": sorted(hook_event_types),
    }
