"""
Metric routes.

Writes (each broadcasts a typed update after the row and its session rollup commit):
  POST /api/metrics/tokens   → token_update
  POST /api/metrics/tools    → tool_update
  POST /api/metrics/findings → finding_update
  POST /api/metrics/wstg     → wstg_update

Reads (optionally scoped with ?session_id=):
  GET /api/metrics/tokens | tools | findings | wstg | dashboard
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query

from agentobs.services.shared.database import get_db
from agentobs.services.shared.schemas import (
    CoverageCreate, CoverageRecordOut, FindingCreate, FindingOut, FindingSummary,
    MetricsDashboard, TokenMetricCreate, TokenMetricOut, TokenSummary,
    ToolEffectiveness, ToolMetricCreate, ToolMetricOut, WSTGCoverageReport, to_wire,
)
from agentobs.services.store.metrics import (
    insert_finding, insert_token_metric, insert_tool_metric, insert_wstg_coverage, list_findings,
)
from agentobs.services.metrics.aggregation import (
    get_finding_summary, get_metrics_dashboard, get_token_summary,
    get_tool_effectiveness_report, get_wstg_coverage_report,
)
from agentobs.services.ingest.broadcaster import Broadcaster, get_broadcaster

router = APIRouter()
logger = structlog.get_logger()


# ── Tokens ────────────────────────────────────────────────────────────────────

@router.post("/metrics/tokens")
async def record_token_metric(
    req: TokenMetricCreate,
    db=Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    row = insert_token_metric(db, req)
    out = to_wire(TokenMetricOut.model_validate(row))
    await broadcaster.broadcast({"type": "token_update", "data": out})
    logger.info("token_metric_recorded", session_id=row.session_id, total_tokens=row.total_tokens,
                cost=row.estimated_cost)
    return out


@router.get("/metrics/tokens", response_model=TokenSummary)
def token_summary(session_id: Optional[str] = None, db=Depends(get_db)):
    return get_token_summary(db, session_id)


# ── Tools ─────────────────────────────────────────────────────────────────────

@router.post("/metrics/tools")
async def record_tool_metric(
    req: ToolMetricCreate,
    db=Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    row = insert_tool_metric(db, req)
    out = to_wire(ToolMetricOut.model_validate(row))
    await broadcaster.broadcast({"type": "tool_update", "data": out})
    logger.info("tool_metric_recorded", session_id=row.session_id, tool_name=row.tool_name,
                status=row.status.value)
    return out


@router.get("/metrics/tools", response_model=list[ToolEffectiveness])
def tool_effectiveness(session_id: Optional[str] = None, db=Depends(get_db)):
    return get_tool_effectiveness_report(db, session_id)


# ── Findings ──────────────────────────────────────────────────────────────────

@router.post("/metrics/findings")
async def record_finding(
    req: FindingCreate,
    db=Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    row = insert_finding(db, req)
    out = to_wire(FindingOut.model_validate(row))
    await broadcaster.broadcast({"type": "finding_update", "data": out})
    logger.info("finding_recorded", session_id=row.session_id, finding_id=row.finding_id,
                severity=row.severity.value if row.severity else None)
    return out


@router.get("/metrics/findings")
def findings(
    session_id: Optional[str] = None,
    list_mode:  bool          = Query(default=False, alias="list"),
    limit:      int           = Query(default=100, ge=1, le=1000),
    db=Depends(get_db),
):
    """Finding summary, or the raw findings (newest first) with ?list=true."""
    if list_mode:
        return [to_wire(FindingOut.model_validate(r)) for r in list_findings(db, session_id, limit)]
    return to_wire(get_finding_summary(db, session_id))


# ── WSTG coverage ─────────────────────────────────────────────────────────────

@router.post("/metrics/wstg")
async def record_wstg_coverage(
    req: CoverageCreate,
    db=Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    row = insert_wstg_coverage(db, req)
    out = to_wire(CoverageRecordOut.model_validate(row))
    await broadcaster.broadcast({"type": "wstg_update", "data": out})
    logger.info("wstg_coverage_recorded", session_id=row.session_id, wstg_id=row.wstg_id,
                status=row.status.value)
    return out


@router.get("/metrics/wstg", response_model=WSTGCoverageReport)
def wstg_coverage(session_id: Optional[str] = None, db=Depends(get_db)):
    return get_wstg_coverage_report(db, session_id)


# ── Dashboard ─────────────────────────────────────────────────────────────────

@router.get("/metrics/dashboard", response_model=MetricsDashboard)
def metrics_dashboard(session_id: Optional[str] = None, db=Depends(get_db)):
    return get_metrics_dashboard(db, session_id)
