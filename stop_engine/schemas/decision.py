"""
Decision outputs: risk, scores, rule evaluations, trace and audit record.

Everything here is JSON-serializable through ``model_dump(mode="json")``;
that is the only serialization boundary (export, logging, HTTP).
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field

from stop_engine.schemas.policy import RuleType
from stop_engine.schemas.transaction import Credential, ScoringWeights


class StageStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"
    WARNING = "warning"
    SKIPPED = "skipped"


# ── Risk ──

class RiskAssessment(BaseModel):
    credential_id: str
    risk_score: float = Field(ge=0, le=1)
    decline_probability: float = Field(ge=0, le=1)
    risk_factors: list[str] = []
    veto_recommendation: bool = False
    veto_reason: Optional[str] = None


# ── Rules ──

class RuleEvaluationResult(BaseModel):
    rule_id: str
    rule_label: str
    rule_type: RuleType
    matched: bool
    reason: str
    action: Optional[str] = None
    forced_credential: Optional[str] = None
    dsl_snippet: Optional[str] = None


class ViolationOverride(BaseModel):
    """An exclusion that lost to a hard FORCE on the same credential."""
    credential_id: str
    credential_name: str
    violation_type: str = "EXCLUSION_OVERRIDE"
    constraint: str
    overridden_by: str
    rule_id: str
    severity: Literal["warning", "critical"] = "warning"


class ExcludedCredential(BaseModel):
    credential_id: str
    credential_name: str
    reason: str
    rule_id: Optional[str] = None
    stage: str


# ── Scoring ──

class SubscoreBreakdown(BaseModel):
    raw: float = 0.0
    normalized: float = 0.0
    weight: float = 0.0
    weighted: float = 0.0
    factors: list[str] = []


class Subscores(BaseModel):
    rewards: SubscoreBreakdown
    credit: SubscoreBreakdown
    cashflow: SubscoreBreakdown
    risk: SubscoreBreakdown


class ScoreAdjustment(BaseModel):
    label: str
    amount: float
    rule_id: Optional[str] = None


class ScoreBreakdown(BaseModel):
    credential_id: str
    credential_name: str
    subscores: Subscores
    bonuses: list[ScoreAdjustment] = []
    penalties: list[ScoreAdjustment] = []
    total_bonuses: float = 0.0
    total_penalties: float = 0.0
    base_score: float = 0.0
    final_score: float = Field(0.0, ge=0, le=100)
    ranking: int = 0
    excluded: bool = False
    exclusion_reason: Optional[str] = None
    exclusion_stage: Optional[str] = None


class SensitivityResult(BaseModel):
    criterion: str
    direction: Literal["increase", "decrease"]
    perturbation: float
    original_winner: str
    new_winner: str
    winner_changed: bool
    new_score: float


# ── DRT ──

class DRTResolution(BaseModel):
    drt_id: str
    selected_child: Credential
    child_scores: list[ScoreBreakdown] = []
    resolution_reason: str
    timestamp: int


# ── Trace ──

class StageError(BaseModel):
    code: str
    message: str
    stage: Optional[str] = None
    rule_id: Optional[str] = None
    credential_id: Optional[str] = None


class LogEntry(BaseModel):
    timestamp: int
    offset_ms: int
    correlation_id: str
    stage: str
    level: Literal["debug", "info", "warn", "error"]
    message: str
    credential_id: Optional[str] = None


class StageResult(BaseModel):
    stage_name: str
    stage_index: int
    status: StageStatus
    start_time: int
    end_time: int
    start_offset: int
    end_offset: int
    duration_ms: int
    inputs: dict[str, Any] = {}
    outputs: dict[str, Any] = {}
    logs: list[LogEntry] = []
    errors: list[StageError] = []


class Span(BaseModel):
    span_id: str
    parent_span_id: Optional[str] = None
    operation_name: str
    start_time: int
    end_time: int
    start_offset: int
    end_offset: int
    duration_ms: int
    status: StageStatus
    tags: dict[str, str] = {}
    logs: list[LogEntry] = []


class TraceData(BaseModel):
    trace_id: str
    correlation_id: str
    seed: int
    start_time: int
    end_time: int
    total_duration_ms: int
    spans: list[Span]
    stage_results: list[StageResult]


# ── Audit ──

class AuthorizationResult(BaseModel):
    approved: bool
    auth_code: Optional[str] = None
    decline_reason: Optional[str] = None
    response_code: str
    processing_time_ms: int
    decline_probability: float


class ForcedSelection(BaseModel):
    type: Literal["FORCED"] = "FORCED"
    rule_id: str
    rule_label: str


class AutoSelection(BaseModel):
    type: Literal["AUTO"] = "AUTO"
    reason: str = "Optimization scoring"


SelectionMethod = Union[ForcedSelection, AutoSelection]


class ShadowOptimization(BaseModel):
    """What the unconstrained optimizer would have picked when a hard rule forced something else."""
    would_have_selected: str
    would_have_selected_name: str
    would_have_score: float
    actual_selected: str
    actual_selected_name: str
    actual_score: float
    reason: str


class StageTiming(BaseModel):
    stage: str
    start_offset: int
    end_offset: int
    duration_ms: int


class AuditRecord(BaseModel):
    correlation_id: str
    replay_seed: int
    user_id: str
    policy_version: str
    policy_signature_short: str
    policy_cache_hit: bool
    pinned_policy: bool

    # ── Decision ──
    selected_route: str
    selected_route_name: str
    selected_dpan: str
    selection_method: SelectionMethod = Field(discriminator="type")
    is_drt: bool
    drt_id: Optional[str] = None
    resolved_child_credential: Optional[str] = None
    resolved_child_name: Optional[str] = None
    drt_resolution: Optional[DRTResolution] = None
    hard_rule_override: bool
    shadow_optimization: Optional[ShadowOptimization] = None

    # ── Explanation ──
    matched_rules: list[RuleEvaluationResult]
    failed_rules: list[RuleEvaluationResult]
    weights_used: ScoringWeights
    score_breakdown: list[ScoreBreakdown]
    candidate_scores: list[ScoreBreakdown]
    excluded_credentials: list[ExcludedCredential]
    violations_overridden: list[ViolationOverride]

    # ── Outcome ──
    risk_score: float
    decline_probability: float
    auth_result: Optional[AuthorizationResult] = None
    processing_time_ms: int
    stage_timings: list[StageTiming]
    spans: list[Span]
    errors: list[StageError]
    timestamp: int


class ScoreDelta(BaseModel):
    credential_id: str
    credential_name: str
    previous_score: float
    new_score: float
    delta: float


class DiffReport(BaseModel):
    previous_selection: str
    new_selection: str
    changed_at_stage: str
    reason: str
    score_deltas: list[ScoreDelta]
