"""
Metric Aggregation Engine
-------------------------
Read-side rollups over the stored metric rows. Each report has two layers:

  summarize_*(rows)              - pure function over an iterable of rows
  get_*(db, session_id=None)     - fetches the rows (global or one session)
                                   and summarizes them

Reports:
  token summary       - input/output/total tokens and cost, by model and by agent
  tool effectiveness  - per tool: calls, outcome counts, success rate,
                        mean duration over non-null durations, vulns found
  finding summary     - counts by severity, type, agent and confidence
                        (null severity/confidence reported as "unknown")
  WSTG coverage       - counts by status; coverage % = executed / (total - n/a);
                        per-category breakdown from the WSTG id
  metrics dashboard   - session counts by status + the four reports, read
                        through one DB session
"""

from collections import defaultdict
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from agentobs.services.shared.models import (
    AgentSession, CoverageRecord, CoverageStatus, Finding, SessionStatus,
    TokenMetric, ToolMetric, ToolStatus,
)
from agentobs.services.shared.schemas import (
    CategoryCoverage, FindingSummary, MetricsDashboard, SessionCounts,
    TokenSummary, ToolEffectiveness, UsageBucket, WSTGCoverageReport,
)

UNKNOWN = "unknown"


def _value(v: Any) -> Any:
    """Enum members → their value; everything else unchanged."""
    return getattr(v, "value", v)


def _percentage(part: int, whole: int) -> float:
    return (part / whole) * 100 if whole > 0 else 0.0


def wstg_category(wstg_id: str) -> str:
    """
    Category segment of a WSTG id: "WSTG-INPV-05" → "INPV".
    Identifiers not shaped PREFIX-CATEGORY-NUMBER fall back to the
    fixed-width slice after the 5-char "WSTG-" prefix.
    """
    parts = wstg_id.split("-")
    if len(parts) >= 3 and parts[1]:
        return parts[1]
    return wstg_id[5:9]


def _rows(db: Session, model, session_id: Optional[str]) -> list:
    q = db.query(model)
    if session_id:
        q = q.filter(model.session_id == session_id)
    return q.all()


# ── Token summary ─────────────────────────────────────────────────────────────

def summarize_tokens(rows: Iterable[TokenMetric], session_id: Optional[str] = None) -> TokenSummary:
    total_input = total_output = total = 0
    cost = 0.0
    by_model: dict[str, UsageBucket] = {}
    by_agent: dict[str, UsageBucket] = {}

    for r in rows:
        total_input  += r.input_tokens or 0
        total_output += r.output_tokens or 0
        total        += r.total_tokens or 0
        cost         += r.estimated_cost or 0.0

        buckets = [by_agent.setdefault(r.source_app, UsageBucket())]
        if r.model_name:
            buckets.append(by_model.setdefault(r.model_name, UsageBucket()))
        for b in buckets:
            b.tokens += r.total_tokens or 0
            b.cost   += r.estimated_cost or 0.0

    return TokenSummary(
        session_id=session_id,
        total_input_tokens=total_input,
        total_output_tokens=total_output,
        total_tokens=total,
        total_cost=cost,
        by_model=by_model,
        by_agent=by_agent,
    )


def get_token_summary(db: Session, session_id: Optional[str] = None) -> TokenSummary:
    return summarize_tokens(_rows(db, TokenMetric, session_id), session_id=session_id)


# ── Tool effectiveness ────────────────────────────────────────────────────────

def summarize_tools(rows: Iterable[ToolMetric]) -> list[ToolEffectiveness]:
    calls:     dict[str, int]       = defaultdict(int)
    outcomes:  dict[str, dict]      = defaultdict(lambda: defaultdict(int))
    durations: dict[str, list[int]] = defaultdict(list)
    vulns:     dict[str, int]       = defaultdict(int)

    for r in rows:
        calls[r.tool_name] += 1
        outcomes[r.tool_name][_value(r.status)] += 1
        if r.duration_ms is not None:
            durations[r.tool_name].append(r.duration_ms)
        if r.found_vulnerability:
            vulns[r.tool_name] += 1

    report = []
    for tool_name, total_calls in calls.items():
        counts = outcomes[tool_name]
        durs = durations[tool_name]
        report.append(ToolEffectiveness(
            tool_name=tool_name,
            total_calls=total_calls,
            success_count=counts[ToolStatus.success.value],
            failure_count=counts[ToolStatus.failure.value],
            timeout_count=counts[ToolStatus.timeout.value],
            success_rate=_percentage(counts[ToolStatus.success.value], total_calls),
            avg_duration_ms=(sum(durs) / len(durs)) if durs else 0.0,
            vulnerabilities_found=vulns[tool_name],
        ))
    report.sort(key=lambda t: (-t.total_calls, t.tool_name))
    return report


def get_tool_effectiveness_report(db: Session, session_id: Optional[str] = None) -> list[ToolEffectiveness]:
    return summarize_tools(_rows(db, ToolMetric, session_id))


# ── Findings ──────────────────────────────────────────────────────────────────

def summarize_findings(rows: Iterable[Finding]) -> FindingSummary:
    by_severity:   dict[str, int] = defaultdict(int)
    by_type:       dict[str, int] = defaultdict(int)
    by_agent:      dict[str, int] = defaultdict(int)
    by_confidence: dict[str, int] = defaultdict(int)
    total = 0

    for r in rows:
        total += 1
        by_severity[_value(r.severity) or UNKNOWN] += 1
        by_type[r.vulnerability_type] += 1
        by_agent[r.source_app] += 1
        by_confidence[_value(r.confidence) or UNKNOWN] += 1

    return FindingSummary(
        total_findings=total,
        by_severity=dict(by_severity),
        by_type=dict(by_type),
        by_agent=dict(by_agent),
        by_confidence=dict(by_confidence),
    )


def get_finding_summary(db: Session, session_id: Optional[str] = None) -> FindingSummary:
    return summarize_findings(_rows(db, Finding, session_id))


# ── WSTG coverage ─────────────────────────────────────────────────────────────

def summarize_coverage(rows: Iterable[CoverageRecord]) -> WSTGCoverageReport:
    by_status: dict[str, int] = defaultdict(int)
    cat_total:    dict[str, int] = defaultdict(int)
    cat_executed: dict[str, int] = defaultdict(int)
    total = 0

    for r in rows:
        total += 1
        status = _value(r.status)
        by_status[status] += 1
        category = wstg_category(r.wstg_id)
        cat_total[category] += 1
        if status == CoverageStatus.executed.value:
            cat_executed[category] += 1

    executed = by_status[CoverageStatus.executed.value]
    not_applicable = by_status[CoverageStatus.not_applicable.value]

    return WSTGCoverageReport(
        total_tests=total,
        executed=executed,
        skipped=by_status[CoverageStatus.skipped.value],
        partial=by_status[CoverageStatus.partial.value],
        not_applicable=not_applicable,
        coverage_percentage=_percentage(executed, total - not_applicable),
        by_category={
            cat: CategoryCoverage(
                executed=cat_executed[cat],
                total=n,
                percentage=_percentage(cat_executed[cat], n),
            )
            for cat, n in cat_total.items()
        },
    )


def get_wstg_coverage_report(db: Session, session_id: Optional[str] = None) -> WSTGCoverageReport:
    return summarize_coverage(_rows(db, CoverageRecord, session_id))


# ── Dashboard ─────────────────────────────────────────────────────────────────

def summarize_sessions(rows: Iterable[AgentSession]) -> SessionCounts:
    counts: dict[str, int] = defaultdict(int)
    total = 0
    for r in rows:
        total += 1
        counts[_value(r.status)] += 1
    return SessionCounts(
        total=total,
        running=counts[SessionStatus.running.value],
        completed=counts[SessionStatus.completed.value],
        failed=counts[SessionStatus.failed.value],
        timeout=counts[SessionStatus.timeout.value],
    )


def get_metrics_dashboard(db: Session, session_id: Optional[str] = None) -> MetricsDashboard:
    """
    All reports read through one DB session with no commit in between, but
    plain SELECTs do not open a transaction under pysqlite, so each query
    sees its own point in time. Each query is atomic and writers commit a
    metric row together with its session rollup; the composite is
    best-effort (eventually consistent, not a snapshot).
    """
    return MetricsDashboard(
        sessions=summarize_sessions(db.query(AgentSession).all()),
        tokens=get_token_summary(db, session_id),
        findings=get_finding_summary(db, session_id),
        tools=get_tool_effectiveness_report(db, session_id),
        wstg=get_wstg_coverage_report(db, session_id),
    )
