"""
Agent observability SQLAlchemy ORM models - all data models in one file.
Uses SQLAlchemy 2.0 Mapped + mapped_column for full type-checker support.

Tables:
  Event          - append-only hook events (HITL status is the only mutable field)
  TokenMetric    - append-only token/cost usage rows
  ToolMetric     - append-only tool call outcomes
  Finding        - security findings, upserted on finding_id
  CoverageRecord - WSTG coverage items, upserted on (session_id, wstg_id)
  AgentSession   - one row per agent run, holding derived aggregates

Session aggregate invariant:
  total_tokens / total_cost        - incrementally summed on every TokenMetric insert
  total_tool_calls / total_findings - recomputed from child rows on every write
  wstg_coverage_pct                 - recomputed from child rows on every write

All timestamps are integer epoch milliseconds, matching the wire format
used by hook producers and dashboard clients.
"""

import enum
import time
from typing import Any, List, Optional

from sqlalchemy import (
    BigInteger, Boolean, Enum as SAEnum, Float,
    Index, Integer, JSON, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from agentobs.services.shared.database import Base


def now_ms() -> int:
    return int(time.time() * 1000)


# ── Enumerations ──────────────────────────────────────────────────────────────

class Severity(str, enum.Enum):
    critical = "critical"
    high     = "high"
    medium   = "medium"
    low      = "low"
    info     = "info"


class Confidence(str, enum.Enum):
    confirmed = "confirmed"
    likely    = "likely"
    possible  = "possible"


class ToolStatus(str, enum.Enum):
    success = "success"
    failure = "failure"
    timeout = "timeout"


class CoverageStatus(str, enum.Enum):
    executed       = "executed"
    skipped        = "skipped"
    partial        = "partial"
    not_applicable = "not_applicable"


class SessionStatus(str, enum.Enum):
    running   = "running"
    completed = "completed"
    failed    = "failed"
    timeout   = "timeout"


class HITLStatus(str, enum.Enum):
    pending   = "pending"
    responded = "responded"
    timeout   = "timeout"
    error     = "error"


# ── Hook Events ───────────────────────────────────────────────────────────────

class Event(Base):
    """
    One hook event emitted by an agent run (PreToolUse, Stop, ...).
    payload/chat/human_in_the_loop are opaque JSON and stored verbatim.
    human_in_the_loop_status moves pending → responded|timeout|error once.
    """
    __tablename__ = "events"

    id:                       Mapped[int]                      = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_app:               Mapped[str]                      = mapped_column(String(255), nullable=False, index=True)
    session_id:               Mapped[str]                      = mapped_column(String(255), nullable=False, index=True)
    hook_event_type:          Mapped[str]                      = mapped_column(String(255), nullable=False, index=True)
    payload:                  Mapped[Any]                      = mapped_column(JSON, nullable=False)
    chat:                     Mapped[Optional[Any]]            = mapped_column(JSON(none_as_null=True), nullable=True)
    summary:                  Mapped[Optional[str]]            = mapped_column(Text, nullable=True)
    timestamp:                Mapped[int]                      = mapped_column(BigInteger, nullable=False, default=now_ms, index=True)
    model_name:               Mapped[Optional[str]]            = mapped_column(String(255), nullable=True)
    human_in_the_loop:        Mapped[Optional[dict[str, Any]]] = mapped_column(JSON(none_as_null=True), nullable=True)
    human_in_the_loop_status: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON(none_as_null=True), nullable=True)


# ── Token Usage ───────────────────────────────────────────────────────────────

class TokenMetric(Base):
    """Token usage and estimated cost for one model call. Never mutated."""
    __tablename__ = "token_metrics"

    id:             Mapped[int]           = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id:     Mapped[str]           = mapped_column(String(255), nullable=False, index=True)
    source_app:     Mapped[str]           = mapped_column(String(255), nullable=False, index=True)
    model_name:     Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    input_tokens:   Mapped[int]           = mapped_column(Integer, nullable=False, default=0)
    output_tokens:  Mapped[int]           = mapped_column(Integer, nullable=False, default=0)
    total_tokens:   Mapped[int]           = mapped_column(Integer, nullable=False, default=0)
    estimated_cost: Mapped[float]         = mapped_column(Float, nullable=False, default=0.0)
    timestamp:      Mapped[int]           = mapped_column(BigInteger, nullable=False, default=now_ms, index=True)


# ── Tool Calls ────────────────────────────────────────────────────────────────

class ToolMetric(Base):
    """Outcome of one tool invocation. Never mutated."""
    __tablename__ = "tool_metrics"

    id:                  Mapped[int]           = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id:          Mapped[str]           = mapped_column(String(255), nullable=False, index=True)
    source_app:          Mapped[str]           = mapped_column(String(255), nullable=False)
    tool_name:           Mapped[str]           = mapped_column(String(255), nullable=False, index=True)
    tool_type:           Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status:              Mapped[ToolStatus]    = mapped_column(SAEnum(ToolStatus), nullable=False, index=True)
    duration_ms:         Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    found_vulnerability: Mapped[bool]          = mapped_column(Boolean, nullable=False, default=False)
    vulnerability_type:  Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_message:       Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp:           Mapped[int]           = mapped_column(BigInteger, nullable=False, default=now_ms)


# ── Findings ──────────────────────────────────────────────────────────────────

class Finding(Base):
    """
    A security finding reported by an agent.
    finding_id is the producer's identifier: resubmitting it overwrites the row.
    """
    __tablename__ = "findings"

    id:                 Mapped[int]                  = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id:         Mapped[str]                  = mapped_column(String(255), nullable=False, index=True)
    source_app:         Mapped[str]                  = mapped_column(String(255), nullable=False)
    finding_id:         Mapped[str]                  = mapped_column(String(255), nullable=False, unique=True)
    vulnerability_type: Mapped[str]                  = mapped_column(String(255), nullable=False, index=True)
    severity:           Mapped[Optional[Severity]]   = mapped_column(SAEnum(Severity), nullable=True, index=True)
    confidence:         Mapped[Optional[Confidence]] = mapped_column(SAEnum(Confidence), nullable=True)
    wstg_id:            Mapped[Optional[str]]        = mapped_column(String(64), nullable=True)
    tool_used:          Mapped[Optional[str]]        = mapped_column(String(255), nullable=True)
    target_url:         Mapped[Optional[str]]        = mapped_column(String(2048), nullable=True)
    location:           Mapped[Optional[str]]        = mapped_column(Text, nullable=True)
    title:              Mapped[Optional[str]]        = mapped_column(String(512), nullable=True)
    description:        Mapped[Optional[str]]        = mapped_column(Text, nullable=True)
    timestamp:          Mapped[int]                  = mapped_column(BigInteger, nullable=False, default=now_ms)


# ── WSTG Coverage ─────────────────────────────────────────────────────────────

class CoverageRecord(Base):
    """
    Status of one coverage item (WSTG test id, e.g. WSTG-INPV-05) in a session.
    Recorded once per (session_id, wstg_id); later submissions overwrite.
    """
    __tablename__ = "wstg_coverage"

    id:             Mapped[int]            = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id:     Mapped[str]            = mapped_column(String(255), nullable=False, index=True)
    source_app:     Mapped[str]            = mapped_column(String(255), nullable=False)
    wstg_id:        Mapped[str]            = mapped_column(String(64), nullable=False)
    wstg_name:      Mapped[Optional[str]]  = mapped_column(String(255), nullable=True)
    status:         Mapped[CoverageStatus] = mapped_column(SAEnum(CoverageStatus), nullable=False, index=True)
    skip_reason:    Mapped[Optional[str]]  = mapped_column(Text, nullable=True)
    findings_count: Mapped[int]            = mapped_column(Integer, nullable=False, default=0)
    timestamp:      Mapped[int]            = mapped_column(BigInteger, nullable=False, default=now_ms)

    __table_args__ = (
        UniqueConstraint("session_id", "wstg_id", name="uq_wstg_coverage_session_item"),
    )


# ── Sessions ──────────────────────────────────────────────────────────────────

class AgentSession(Base):
    """
    One continuous agent run. Created on first upsert (or first metric that
    references it); aggregate columns are maintained by store.metrics.
    Terminal once status leaves running.
    """
    __tablename__ = "sessions"

    id:                Mapped[int]           = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id:        Mapped[str]           = mapped_column(String(255), nullable=False, unique=True)
    client_name:       Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    target_url:        Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    status:            Mapped[SessionStatus] = mapped_column(SAEnum(SessionStatus), nullable=False, default=SessionStatus.running, index=True)
    started_at:        Mapped[int]           = mapped_column(BigInteger, nullable=False, default=now_ms)
    ended_at:          Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    duration_ms:       Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    total_tokens:      Mapped[int]           = mapped_column(Integer, nullable=False, default=0)
    total_cost:        Mapped[float]         = mapped_column(Float, nullable=False, default=0.0)
    total_findings:    Mapped[int]           = mapped_column(Integer, nullable=False, default=0)
    total_tool_calls:  Mapped[int]           = mapped_column(Integer, nullable=False, default=0)
    agents_used:       Mapped[List[str]]     = mapped_column(JSON, nullable=False, default=list)
    wstg_coverage_pct: Mapped[float]         = mapped_column(Float, nullable=False, default=0.0)

    __table_args__ = (
        Index("ix_sessions_started_at", "started_at"),
    )
