"""
Pydantic request/response schemas for the agent observability server.
All API responses and live-channel messages are built from these schemas.

Wire conventions:
  - timestamps are integer epoch milliseconds
  - the two HITL event fields keep their camelCase wire names
    (humanInTheLoop / humanInTheLoopStatus) via aliases
"""

from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_core import PydanticCustomError

from agentobs.services.shared.models import (
    Severity, Confidence, ToolStatus, CoverageStatus, SessionStatus,
)

# Required string fields reject "" the same way they reject absence
RequiredStr = Annotated[str, Field(min_length=1)]


def to_wire(model: BaseModel, exclude_none: bool = False) -> dict[str, Any]:
    """JSON-safe dict using wire (alias) names. Used for HTTP bodies and broadcasts."""
    return model.model_dump(mode="json", by_alias=True, exclude_none=exclude_none)


# ── Hook events ───────────────────────────────────────────────────────────────

class HookEventCreate(BaseModel):
    """
    Body of POST /events. payload is opaque JSON and must be present.
    Unknown top-level keys are ignored.
    """
    model_config = ConfigDict(populate_by_name=True)

    source_app:               RequiredStr
    session_id:               RequiredStr
    hook_event_type:          RequiredStr
    payload:                  Any
    chat:                     Optional[Any]            = None
    summary:                  Optional[str]            = None
    timestamp:                Optional[int]            = None
    model_name:               Optional[str]            = None
    human_in_the_loop:        Optional[dict[str, Any]] = Field(None, alias="humanInTheLoop")
    human_in_the_loop_status: Optional[dict[str, Any]] = Field(None, alias="humanInTheLoopStatus")

    @field_validator("payload")
    @classmethod
    def _payload_present(cls, value: Any) -> Any:
        if value is None:
            raise PydanticCustomError("missing", "Field required")
        return value


class HookEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:                       int
    source_app:               str
    session_id:               str
    hook_event_type:          str
    payload:                  Any
    chat:                     Optional[Any]            = None
    summary:                  Optional[str]            = None
    timestamp:                int
    model_name:               Optional[str]            = None
    human_in_the_loop:        Optional[dict[str, Any]] = Field(None, serialization_alias="humanInTheLoop")
    human_in_the_loop_status: Optional[dict[str, Any]] = Field(None, serialization_alias="humanInTheLoopStatus")


class FilterOptions(BaseModel):
    source_apps:      list[str]
    session_ids:      list[str]
    hook_event_types: list[str]


# ── Token metrics ─────────────────────────────────────────────────────────────

class TokenMetricCreate(BaseModel):
    session_id:     RequiredStr
    source_app:     RequiredStr
    model_name:     Optional[str]   = None
    input_tokens:   int             = Field(0, ge=0)
    output_tokens:  int             = Field(0, ge=0)
    total_tokens:   Optional[int]   = Field(None, ge=0)  # defaults to input + output
    estimated_cost: float           = Field(0.0, ge=0)
    timestamp:      Optional[int]   = None


class TokenMetricOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:             int
    session_id:     str
    source_app:     str
    model_name:     Optional[str]
    input_tokens:   int
    output_tokens:  int
    total_tokens:   int
    estimated_cost: float
    timestamp:      int


# ── Tool metrics ──────────────────────────────────────────────────────────────

class ToolMetricCreate(BaseModel):
    session_id:          RequiredStr
    source_app:          RequiredStr
    tool_name:           RequiredStr
    status:              ToolStatus
    tool_type:           Optional[str] = None
    duration_ms:         Optional[int] = Field(None, ge=0)
    found_vulnerability: bool          = False
    vulnerability_type:  Optional[str] = None
    error_message:       Optional[str] = None
    timestamp:           Optional[int] = None


class ToolMetricOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:                  int
    session_id:          str
    source_app:          str
    tool_name:           str
    tool_type:           Optional[str]
    status:              ToolStatus
    duration_ms:         Optional[int]
    found_vulnerability: bool
    vulnerability_type:  Optional[str]
    error_message:       Optional[str]
    timestamp:           int


# ── Findings ──────────────────────────────────────────────────────────────────

class FindingCreate(BaseModel):
    session_id:         RequiredStr
    source_app:         RequiredStr
    finding_id:         RequiredStr
    vulnerability_type: RequiredStr
    severity:           Optional[Severity]   = None  # stored as medium when omitted
    confidence:         Optional[Confidence] = None  # stored as possible when omitted
    wstg_id:            Optional[str]        = None
    tool_used:          Optional[str]        = None
    target_url:         Optional[str]        = None
    location:           Optional[str]        = None
    title:              Optional[str]        = None
    description:        Optional[str]        = None
    timestamp:          Optional[int]        = None


class FindingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:                 int
    session_id:         str
    source_app:         str
    finding_id:         str
    vulnerability_type: str
    severity:           Optional[Severity]
    confidence:         Optional[Confidence]
    wstg_id:            Optional[str]
    tool_used:          Optional[str]
    target_url:         Optional[str]
    location:           Optional[str] = None
    title:              Optional[str] = None
    description:        Optional[str] = None
    timestamp:          int


# ── WSTG coverage ─────────────────────────────────────────────────────────────

class CoverageCreate(BaseModel):
    session_id:     RequiredStr
    source_app:     RequiredStr
    wstg_id:        RequiredStr
    status:         CoverageStatus
    wstg_name:      Optional[str] = None
    skip_reason:    Optional[str] = None
    findings_count: int           = Field(0, ge=0)
    timestamp:      Optional[int] = None


class CoverageRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:             int
    session_id:     str
    source_app:     str
    wstg_id:        str
    wstg_name:      Optional[str]
    status:         CoverageStatus
    skip_reason:    Optional[str]
    findings_count: int
    timestamp:      int


# ── Sessions ──────────────────────────────────────────────────────────────────

class SessionUpsert(BaseModel):
    """Body of POST /api/sessions. Omitted fields keep their stored value."""
    session_id:  RequiredStr
    client_name: Optional[str]           = None
    target_url:  Optional[str]           = None
    status:      Optional[SessionStatus] = None
    started_at:  Optional[int]           = None
    ended_at:    Optional[int]           = None
    duration_ms: Optional[int]           = Field(None, ge=0)
    agents_used: Optional[list[str]]     = None


class AgentAdd(BaseModel):
    agent_name: RequiredStr


class SessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:                int
    session_id:        str
    client_name:       Optional[str]
    target_url:        Optional[str]
    status:            SessionStatus
    started_at:        int
    ended_at:          Optional[int]
    duration_ms:       Optional[int]
    total_tokens:      int
    total_cost:        float
    total_findings:    int
    total_tool_calls:  int
    agents_used:       list[str]
    wstg_coverage_pct: float


# ── Aggregates ────────────────────────────────────────────────────────────────

class UsageBucket(BaseModel):
    tokens: int   = 0
    cost:   float = 0.0


class TokenSummary(BaseModel):
    session_id:          Optional[str] = None
    total_input_tokens:  int
    total_output_tokens: int
    total_tokens:        int
    total_cost:          float
    by_model:            dict[str, UsageBucket]
    by_agent:            dict[str, UsageBucket]


class ToolEffectiveness(BaseModel):
    tool_name:             str
    total_calls:           int
    success_count:         int
    failure_count:         int
    timeout_count:         int
    success_rate:          float
    avg_duration_ms:       float
    vulnerabilities_found: int


class FindingSummary(BaseModel):
    total_findings: int
    by_severity:    dict[str, int]
    by_type:        dict[str, int]
    by_agent:       dict[str, int]
    by_confidence:  dict[str, int]


class CategoryCoverage(BaseModel):
    executed:   int
    total:      int
    percentage: float


class WSTGCoverageReport(BaseModel):
    total_tests:         int
    executed:            int
    skipped:             int
    partial:             int
    not_applicable:      int
    coverage_percentage: float
    by_category:         dict[str, CategoryCoverage]


class SessionCounts(BaseModel):
    total:     int
    running:   int
    completed: int
    failed:    int
    timeout:   int


class MetricsDashboard(BaseModel):
    sessions: SessionCounts
    tokens:   TokenSummary
    findings: FindingSummary
    tools:    list[ToolEffectiveness]
    wstg:     WSTGCoverageReport
