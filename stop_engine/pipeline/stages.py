"""
Pipeline stage table and typed per-stage outputs.

Executors return a StageOutcome carrying one of the typed output models
below; the orchestrator flattens it to JSON only when it builds the
StageResult for the trace.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import BaseModel

from stop_engine.schemas.decision import StageStatus
from stop_engine.schemas.transaction import TransactionContext

INGEST_EVENT = "Ingest Event"
CONTEXT_EXTRACTION = "Context Extraction"
PROFILE_FETCH = "Profile Fetch"
POLICY_LOAD = "Policy Load"
RULE_COMPILE = "Rule Compile"
RULE_EVALUATION = "Rule Evaluation"
CANDIDATE_FILTERING = "Candidate Filtering"
OPTIMIZATION_SCORING = "Optimization Scoring"
ROUTE_SELECTION = "Route Selection"
DRT_RESOLUTION = "DRT Resolution"
CREDENTIAL_INJECTION = "Credential Injection"
AUTHORIZATION_GATEWAY = "Authorization Gateway"
AUDIT_RECORD_EMIT = "Audit Record Emit"

STAGE_NAMES: tuple[str, ...] = (
    INGEST_EVENT,
    CONTEXT_EXTRACTION,
    PROFILE_FETCH,
    POLICY_LOAD,
    RULE_COMPILE,
    RULE_EVALUATION,
    CANDIDATE_FILTERING,
    OPTIMIZATION_SCORING,
    ROUTE_SELECTION,
    DRT_RESOLUTION,
    CREDENTIAL_INJECTION,
    AUTHORIZATION_GATEWAY,
    AUDIT_RECORD_EMIT,
)

# Simulated latency per stage, (min_ms, max_ms)
STAGE_LATENCY_RANGES: dict[str, tuple[int, int]] = {
    INGEST_EVENT: (2, 6),
    CONTEXT_EXTRACTION: (6, 12),
    PROFILE_FETCH: (10, 25),
    POLICY_LOAD: (14, 30),
    RULE_COMPILE: (8, 16),
    RULE_EVALUATION: (4, 10),
    CANDIDATE_FILTERING: (6, 14),
    OPTIMIZATION_SCORING: (18, 45),
    ROUTE_SELECTION: (3, 8),
    DRT_RESOLUTION: (5, 12),
    CREDENTIAL_INJECTION: (7, 15),
    AUTHORIZATION_GATEWAY: (80, 220),
    AUDIT_RECORD_EMIT: (4, 10),
}


# ── Typed outputs ──

class IngestOutput(BaseModel):
    acknowledged: bool = True
    correlation_id: str


class ContextOutput(BaseModel):
    enriched_context: TransactionContext


class ProfileOutput(BaseModel):
    credential_count: int
    routing_credential_count: int


class PolicyLoadOutput(BaseModel):
    version: str
    cache_hit: bool
    pinned: bool
    signature: str
    fetch_latency_ms: int


class RuleCompileOutput(BaseModel):
    rule_count: int
    compiled_count: int


class RuleEvaluationOutput(BaseModel):
    matched_count: int
    failed_count: int
    hard_override: bool
    forced_credential: Optional[str] = None


class CandidateFilteringOutput(BaseModel):
    candidate_count: int
    excluded_count: int
    vetoed: list[str] = []


class ScoringOutput(BaseModel):
    candidate_count: int
    top_credential: Optional[str] = None
    top_score: Optional[float] = None


class RouteSelectionOutput(BaseModel):
    selected_credential: Optional[str] = None
    is_drt: bool = False
    shadow_winner: Optional[str] = None


class DRTOutput(BaseModel):
    skipped: bool = False
    selected_child: Optional[str] = None
    reason: Optional[str] = None


class InjectionOutput(BaseModel):
    final_credential: Optional[str] = None
    final_dpan: Optional[str] = None


class AuditEmitOutput(BaseModel):
    total_time_ms: int
    error_count: int


@dataclass
class StageOutcome:
    outputs: BaseModel
    inputs: dict[str, Any] = field(default_factory=dict)
    status: StageStatus = StageStatus.COMPLETED
