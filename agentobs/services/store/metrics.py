"""
Metric and session store.

Every write persists its row AND refreshes the owning session's aggregates
before a single commit, so readers never see one without the other:

  insert_token_metric  → total_tokens / total_cost += row   (incremental)
  insert_tool_metric   → total_tool_calls  = COUNT(tool_metrics)      (recomputed)
  insert_finding       → total_findings    = COUNT(findings)          (recomputed)
  insert_wstg_coverage → wstg_coverage_pct = executed / applicable    (recomputed)

A metric for an unknown session_id auto-creates the session (status=running),
so every metric row has exactly one owning session from the moment it lands.
"""

from typing import Optional

import structlog
from sqlalchemy import case, func
from sqlalchemy.orm import Session

from agentobs.services.shared.models import (
    AgentSession, CoverageRecord, CoverageStatus, Confidence, Finding,
    SessionStatus, Severity, TokenMetric, ToolMetric, now_ms,
)
from agentobs.services.shared.schemas import (
    CoverageCreate, FindingCreate, SessionUpsert, TokenMetricCreate, ToolMetricCreate,
)

logger = structlog.get_logger()


class SessionAlreadyEnded(ValueError):
    """Raised when a terminal session is asked to move to a different status."""

    def __init__(self, session_id: str, status: str):
        super().__init__(f"Session {session_id} is already {status}")
        self.session_id = session_id
        self.status = status


# ── Session aggregate maintenance ──────────────────────────────────────────────

def _get_or_create_session(db: Session, session_id: str, started_at: Optional[int] = None) -> AgentSession:
    sess = db.query(AgentSession).filter(AgentSession.session_id == session_id).first()
    if sess is None:
        sess = AgentSession(
            session_id=session_id,
            status=SessionStatus.running,
            started_at=started_at or now_ms(),
            agents_used=[],
            total_tokens=0,
            total_cost=0.0,
            total_findings=0,
            total_tool_calls=0,
            wstg_coverage_pct=0.0,
        )
        db.add(sess)
        db.flush()
        logger.info("session_auto_created", session_id=session_id)
    return sess


def _recompute_tool_count(db: Session, sess: AgentSession) -> None:
    sess.total_tool_calls = (
        db.query(func.count(ToolMetric.id))
        .filter(ToolMetric.session_id == sess.session_id)
        .scalar()
    ) or 0


def _recompute_finding_count(db: Session, sess: AgentSession) -> None:
    sess.total_findings = (
        db.query(func.count(Finding.id))
        .filter(Finding.session_id == sess.session_id)
        .scalar()
    ) or 0


def _recompute_coverage_pct(db: Session, sess: AgentSession) -> None:
    total, executed, not_applicable = (
        db.query(
            func.count(CoverageRecord.id),
            func.coalesce(func.sum(case((CoverageRecord.status == CoverageStatus.executed, 1), else_=0)), 0),
            func.coalesce(func.sum(case((CoverageRecord.status == CoverageStatus.not_applicable, 1), else_=0)), 0),
        )
        .filter(CoverageRecord.session_id == sess.session_id)
        .one()
    )
    applicable = total - not_applicable
    sess.wstg_coverage_pct = (executed * 100.0 / applicable) if applicable > 0 else 0.0


# ── Token metrics ──────────────────────────────────────────────────────────────

def insert_token_metric(db: Session, req: TokenMetricCreate) -> TokenMetric:
    timestamp = req.timestamp or now_ms()
    total = req.total_tokens if req.total_tokens is not None else req.input_tokens + req.output_tokens

    row = TokenMetric(
        session_id=req.session_id,
        source_app=req.source_app,
        model_name=req.model_name or None,
        input_tokens=req.input_tokens,
        output_tokens=req.output_tokens,
        total_tokens=total,
        estimated_cost=req.estimated_cost,
        timestamp=timestamp,
    )
    db.add(row)

    sess = _get_or_create_session(db, req.session_id, started_at=timestamp)
    sess.total_tokens = (sess.total_tokens or 0) + total
    sess.total_cost = (sess.total_cost or 0.0) + req.estimated_cost

    db.commit()
    db.refresh(row)
    return row


# ── Tool metrics ───────────────────────────────────────────────────────────────

def insert_tool_metric(db: Session, req: ToolMetricCreate) -> ToolMetric:
    timestamp = req.timestamp or now_ms()
    row = ToolMetric(
        session_id=req.session_id,
        source_app=req.source_app,
        tool_name=req.tool_name,
        tool_type=req.tool_type or None,
        status=req.status,
        duration_ms=req.duration_ms,
        found_vulnerability=req.found_vulnerability,
        vulnerability_type=req.vulnerability_type or None,
        error_message=req.error_message or None,
        timestamp=timestamp,
    )
    db.add(row)

    sess = _get_or_create_session(db, req.session_id, started_at=timestamp)
    db.flush()
    _recompute_tool_count(db, sess)

    db.commit()
    db.refresh(row)
    return row


# ── Findings ───────────────────────────────────────────────────────────────────

def insert_finding(db: Session, req: FindingCreate) -> Finding:
    """Upsert on finding_id: a resubmission overwrites every field, keeping the row id."""
    timestamp = req.timestamp or now_ms()
    row = db.query(Finding).filter(Finding.finding_id == req.finding_id).first()
    previous_session_id = row.session_id if row else None
    if row is None:
        row = Finding(finding_id=req.finding_id)
        db.add(row)

    row.session_id         = req.session_id
    row.source_app         = req.source_app
    row.vulnerability_type = req.vulnerability_type
    row.severity           = req.severity or Severity.medium
    row.confidence         = req.confidence or Confidence.possible
    row.wstg_id            = req.wstg_id or None
    row.tool_used          = req.tool_used or None
    row.target_url         = req.target_url or None
    row.location           = req.location or None
    row.title              = req.title or None
    row.description        = req.description or None
    row.timestamp          = timestamp

    sess = _get_or_create_session(db, req.session_id, started_at=timestamp)
    db.flush()
    _recompute_finding_count(db, sess)

    # A finding resubmitted under another session leaves the old one
    if previous_session_id and previous_session_id != req.session_id:
        old = db.query(AgentSession).filter(AgentSession.session_id == previous_session_id).first()
        if old is not None:
            _recompute_finding_count(db, old)

    db.commit()
    db.refresh(row)
    return row


def list_findings(db: Session, session_id: Optional[str] = None, limit: int = 100) -> list[Finding]:
    q = db.query(Finding)
    if session_id:
        q = q.filter(Finding.session_id == session_id)
    return q.order_by(Finding.timestamp.desc(), Finding.id.desc()).limit(limit).all()


# ── WSTG coverage ──────────────────────────────────────────────────────────────

def insert_wstg_coverage(db: Session, req: CoverageCreate) -> CoverageRecord:
    """Upsert on (session_id, wstg_id)."""
    timestamp = req.timestamp or now_ms()
    row = (
        db.query(CoverageRecord)
        .filter(CoverageRecord.session_id == req.session_id, CoverageRecord.wstg_id == req.wstg_id)
        .first()
    )
    if row is None:
        row = CoverageRecord(session_id=req.session_id, wstg_id=req.wstg_id)
        db.add(row)

    row.source_app     = req.source_app
    row.wstg_name      = req.wstg_name or None
    row.status         = req.status
    row.skip_reason    = req.skip_reason or None
    row.findings_count = req.findings_count
    row.timestamp      = timestamp

    sess = _get_or_create_session(db, req.session_id, started_at=timestamp)
    db.flush()
    _recompute_coverage_pct(db, sess)

    db.commit()
    db.refresh(row)
    return row


# ── Sessions ───────────────────────────────────────────────────────────────────

def get_session(db: Session, session_id: str) -> Optional[AgentSession]:
    return db.query(AgentSession).filter(AgentSession.session_id == session_id).first()


def get_sessions(db: Session, status: Optional[str] = None, limit: int = 50) -> list[AgentSession]:
    q = db.query(AgentSession)
    if status:
        try:
            q = q.filter(AgentSession.status == SessionStatus(status))
        except ValueError:
            return []
    return q.order_by(AgentSession.started_at.desc(), AgentSession.id.desc()).limit(limit).all()


def upsert_session(db: Session, req: SessionUpsert) -> AgentSession:
    """
    Create the session, or merge the supplied fields into the stored one.
    Omitted fields keep their stored value. Aggregate columns are never
    taken from the request.
    """
    sess = get_session(db, req.session_id)
    created = sess is None
    if created:
        sess = AgentSession(
            session_id=req.session_id,
            status=SessionStatus.running,
            started_at=req.started_at or now_ms(),
            agents_used=list(dict.fromkeys(req.agents_used or [])),
            total_tokens=0,
            total_cost=0.0,
            total_findings=0,
            total_tool_calls=0,
            wstg_coverage_pct=0.0,
        )
        db.add(sess)
    elif req.status and sess.status != SessionStatus.running and req.status != sess.status:
        raise SessionAlreadyEnded(sess.session_id, sess.status.value)

    if req.client_name:
        sess.client_name = req.client_name
    if req.target_url:
        sess.target_url = req.target_url
    if req.ended_at:
        sess.ended_at = req.ended_at
    if req.duration_ms is not None:
        sess.duration_ms = req.duration_ms

    if req.status and req.status != sess.status:
        sess.status = req.status
        if req.status != SessionStatus.running:
            if sess.ended_at is None:
                sess.ended_at = now_ms()
            if sess.duration_ms is None:
                sess.duration_ms = max(sess.ended_at - sess.started_at, 0)

    db.commit()
    db.refresh(sess)
    logger.info(
        "session_upserted",
        session_id=sess.session_id,
        created=created,
        status=sess.status.value,
    )
    return sess


def add_agent_to_session(db: Session, session_id: str, agent_name: str) -> Optional[AgentSession]:
    """Append agent_name to agents_used once. Returns None for an unknown session."""
    sess = get_session(db, session_id)
    if sess is None:
        return None
    agents = list(sess.agents_used or [])
    if agent_name not in agents:
        # Reassign so the JSON column change is detected
        sess.agents_used = agents + [agent_name]
        db.commit()
        db.refresh(sess)
    return sess
