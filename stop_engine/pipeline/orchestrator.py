"""
STOP Orchestrator — the 13-stage routing pipeline.

Orchestrates:
  1. Ingest + context enrichment
  2. Policy snapshot from the injected registry
  3. Rule compile + evaluation
  4. Risk assessment and candidate filtering
  5. Optimization scoring + route selection (with shadow comparison)
  6. DRT resolution, credential injection, simulated authorization
  7. Audit record assembly

Every draw goes through one seeded PRNG and the engine re-seeds at the top
of each run, so (seed, context, user, policy) fully determines the audit
record. With an injected clock the output is byte-identical across runs.

A failing stage is recorded as an error and the remaining stages still run.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union

import structlog

from stop_engine.core import metrics
from stop_engine.core.config import get_settings
from stop_engine.core.exceptions import PipelineBusyError
from stop_engine.core.prng import PRNG, generate_seed
from stop_engine.pipeline import stages
from stop_engine.pipeline.stages import STAGE_LATENCY_RANGES, STAGE_NAMES, StageOutcome
from stop_engine.policy.registry import PolicyRegistry
from stop_engine.rules.dsl import compile_rules
from stop_engine.rules.engine import RulesEngineResult, evaluate_rules
from stop_engine.schemas.decision import (
    AuditRecord,
    AuthorizationResult,
    AutoSelection,
    ForcedSelection,
    LogEntry,
    RiskAssessment,
    SensitivityResult,
    ShadowOptimization,
    Span,
    StageError,
    StageResult,
    StageStatus,
    StageTiming,
    TraceData,
)
from stop_engine.schemas.policy import PolicyVersion, Rule
from stop_engine.schemas.transaction import (
    Credential,
    RoutingCredential,
    TransactionContext,
    UserProfile,
)
from stop_engine.scoring.drt import DRTResolutionResult, resolve_drt
from stop_engine.scoring.engine import (
    ScoringResult,
    compute_sensitivity,
    normalize_weights,
    score_credentials,
    select_best_credential,
)
from stop_engine.scoring.risk import RiskEngineConfig, assess_all_risks

logger = structlog.get_logger()

CredentialLike = Union[Credential, RoutingCredential]
StageCallback = Callable[[StageResult, int], None]

DEFAULT_DECLINE_PROBABILITY = 0.05


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class PipelineResult:
    trace: TraceData
    audit_record: AuditRecord
    stage_results: list[StageResult]
    selected_route: str
    selected_dpan: str
    is_drt: bool
    drt_resolution: Optional[DRTResolutionResult]
    scoring_result: Optional[ScoringResult]
    rules_result: Optional[RulesEngineResult]
    sensitivity: list[SensitivityResult]


class StopEngine:
    """
    One engine instance runs one pipeline at a time.

    ``clock`` returns epoch ms and ``sleep`` takes seconds; both are
    injectable so tests can pin wall-clock fields and skip the simulated
    stage latency.
    """

    def __init__(
        self,
        registry: PolicyRegistry,
        seed: Optional[int] = None,
        *,
        clock: Optional[Callable[[], int]] = None,
        sleep: Optional[Callable[[float], None]] = None,
        risk_config: Optional[RiskEngineConfig] = None,
    ):
        self.registry = registry
        self._seed = seed if seed is not None else generate_seed()
        self._clock = clock or _now_ms
        self._sleep = sleep or time.sleep
        self._risk_config = risk_config
        self._settings = get_settings()
        self._busy = threading.Lock()
        self._reset_run_state()

    @property
    def seed(self) -> int:
        return self._seed

    @property
    def correlation_id(self) -> str:
        return self._correlation_id

    def _reset_run_state(self) -> None:
        self._prng = PRNG(self._seed)
        self._start_time = 0
        self._offset = 0
        self._stage_start = 0
        self._stage_end = 0
        self._stage_logs: list[LogEntry] = []
        self._spans: list[Span] = []
        self._stage_results: list[StageResult] = []
        self._errors: list[StageError] = []
        self._correlation_id = ""

        self._raw_context: Optional[TransactionContext] = None
        self._user: Optional[UserProfile] = None
        self._credentials: list[CredentialLike] = []
        self._policy: Optional[PolicyVersion] = None
        self._pinned = False
        self._rules: list[Rule] = []
        self._context: Optional[TransactionContext] = None
        self._rules_result: Optional[RulesEngineResult] = None
        self._risk: dict[str, RiskAssessment] = {}
        self._scoring: Optional[ScoringResult] = None
        self._selected_id: Optional[str] = None
        self._selected: Optional[CredentialLike] = None
        self._shadow: Optional[ShadowOptimization] = None
        self._drt: Optional[DRTResolutionResult] = None
        self._final: Optional[CredentialLike] = None
        self._auth: Optional[AuthorizationResult] = None

    # ── Stage plumbing ──

    def _log(self, level: str, stage: str, message: str, credential_id: Optional[str] = None) -> None:
        offset = min(self._stage_start + self._prng.random_int(1, 3), self._stage_end)
        self._stage_logs.append(LogEntry(
            timestamp=self._start_time + offset,
            offset_ms=offset,
            correlation_id=self._correlation_id,
            stage=stage,
            level=level,
            message=message,
            credential_id=credential_id,
        ))

    def _latency(self, stage: str) -> int:
        low, high = STAGE_LATENCY_RANGES[stage]
        return self._prng.get_latency(low, high)

    def _run_stage(
        self,
        index: int,
        executor: Callable[[], StageOutcome],
        on_complete: Optional[StageCallback],
        duration: Optional[int] = None,
    ) -> StageResult:
        name = STAGE_NAMES[index]
        if duration is None:
            duration = self._latency(name)
        self._stage_start = self._offset
        self._stage_end = self._offset + duration
        self._offset = self._stage_end
        self._stage_logs = []

        if self._settings.simulate_stage_latency:
            self._sleep(max(1, duration / 8) / 1000)

        try:
            outcome = executor()
            status = outcome.status
            inputs = outcome.inputs
            outputs = outcome.outputs.model_dump(mode="json")
            errors: list[StageError] = []
        except Exception as e:
            logger.error("stage_failed", stage=name, correlation_id=self._correlation_id, error=str(e))
            metrics.stage_errors_counter.labels(stage=name).inc()
            error = StageError(code="STAGE_ERROR", message=str(e) or type(e).__name__, stage=name)
            self._errors.append(error)
            status, inputs, outputs, errors = StageStatus.ERROR, {}, {}, [error]

        result = StageResult(
            stage_name=name,
            stage_index=index,
            status=status,
            start_time=self._start_time + self._stage_start,
            end_time=self._start_time + self._stage_end,
            start_offset=self._stage_start,
            end_offset=self._stage_end,
            duration_ms=duration,
            inputs=inputs,
            outputs=outputs,
            logs=self._stage_logs,
            errors=errors,
        )
        self._stage_results.append(result)
        self._spans.append(Span(
            span_id=f"span_{self._prng.random_int(10000, 99999)}",
            operation_name=name,
            start_time=result.start_time,
            end_time=result.end_time,
            start_offset=result.start_offset,
            end_offset=result.end_offset,
            duration_ms=duration,
            status=status,
            tags={"correlation_id": self._correlation_id, "stage_index": str(index)},
            logs=result.logs,
        ))
        logger.debug("stage_completed", stage=name, status=status.value, duration_ms=duration)

        if on_complete is not None:
            on_complete(result, index)
        return result

    # ── Entry point ──

    def run_pipeline(
        self,
        context: TransactionContext,
        user: UserProfile,
        on_stage_complete: Optional[StageCallback] = None,
    ) -> PipelineResult:
        if not self._busy.acquire(blocking=False):
            raise PipelineBusyError("run_pipeline is already executing on this engine")
        try:
            return self._run(context, user, on_stage_complete)
        finally:
            self._busy.release()

    def _run(
        self,
        context: TransactionContext,
        user: UserProfile,
        on_stage_complete: Optional[StageCallback],
    ) -> PipelineResult:
        self._reset_run_state()
        self._start_time = self._clock()
        self._correlation_id = self._prng.generate_correlation_id()
        self._raw_context = context
        self._user = user
        self._credentials = user.all_credentials()

        # one snapshot for the whole run; registry edits mid-run are not observed
        self._policy = self.registry.get_active_policy()
        self._pinned = self.registry.is_pinned

        logger.info(
            "pipeline_started",
            correlation_id=self._correlation_id,
            seed=self._seed,
            user_id=user.id,
            policy_version=self._policy.version,
        )

        executors = [
            self._ingest_event,
            self._extract_context,
            self._fetch_profile,
            self._load_policy,
            self._compile_rules,
            self._evaluate_rules,
            self._filter_candidates,
            self._score,
            self._select_route,
            self._resolve_drt,
            self._inject_credential,
            self._authorize,
            self._emit_audit,
        ]
        for index, executor in enumerate(executors):
            duration = None
            if STAGE_NAMES[index] == stages.POLICY_LOAD:
                duration = self.registry.simulate_policy_fetch(
                    self._policy.is_cached, STAGE_LATENCY_RANGES[stages.POLICY_LOAD], self._prng
                )
            self._run_stage(index, executor, on_stage_complete, duration)

        audit_record = self._build_audit_record()
        end_time = self._clock()
        trace = TraceData(
            trace_id=self._correlation_id,
            correlation_id=self._correlation_id,
            seed=self._seed,
            start_time=self._start_time,
            end_time=end_time,
            total_duration_ms=self._offset,
            spans=self._spans,
            stage_results=self._stage_results,
        )

        sensitivity: list[SensitivityResult] = []
        if self._scoring is not None:
            sensitivity = compute_sensitivity(
                self._scoring.scores, self._scoring.weights_used, self._settings.sensitivity_perturbation
            )

        metrics.record_run(
            audit_record.selection_method.type if self._selected_id else "NONE",
            self._auth.approved if self._auth else None,
            audit_record.processing_time_ms,
        )
        logger.info(
            "pipeline_complete",
            correlation_id=self._correlation_id,
            selected_route=audit_record.selected_route,
            selection=audit_record.selection_method.type,
            is_drt=audit_record.is_drt,
            processing_time_ms=audit_record.processing_time_ms,
            errors=len(self._errors),
        )

        return PipelineResult(
            trace=trace,
            audit_record=audit_record,
            stage_results=self._stage_results,
            selected_route=audit_record.selected_route,
            selected_dpan=audit_record.selected_dpan,
            is_drt=audit_record.is_drt,
            drt_resolution=self._drt,
            scoring_result=self._scoring,
            rules_result=self._rules_result,
            sensitivity=sensitivity,
        )

    # ── Stages ──

    def _ingest_event(self) -> StageOutcome:
        ctx = self._raw_context
        self._log("info", stages.INGEST_EVENT, f"Received: {ctx.merchant} ${ctx.amount:.2f}")
        return StageOutcome(
            inputs={"raw_event": ctx.model_dump(mode="json")},
            outputs=stages.IngestOutput(correlation_id=self._correlation_id),
        )

    def _extract_context(self) -> StageOutcome:
        self._context = self._raw_context.model_copy(
            update={"correlation_id": self._correlation_id, "timestamp": self._clock()}
        )
        ctx = self._context
        self._log("info", stages.CONTEXT_EXTRACTION, f"Extracted: ${ctx.amount:.2f}, MCC={ctx.mcc}, {ctx.country}")
        return StageOutcome(
            inputs={"merchant": ctx.merchant, "mcc": ctx.mcc},
            outputs=stages.ContextOutput(enriched_context=ctx),
        )

    def _fetch_profile(self) -> StageOutcome:
        user = self._user
        self._log(
            "info",
            stages.PROFILE_FETCH,
            f"Loaded {len(user.credentials)} credentials, {len(user.routing_credentials)} DRTs",
        )
        return StageOutcome(
            inputs={"user_id": user.id},
            outputs=stages.ProfileOutput(
                credential_count=len(user.credentials),
                routing_credential_count=len(user.routing_credentials),
            ),
        )

    def _load_policy(self) -> StageOutcome:
        policy = self._policy
        self._rules = policy.rules
        tag = "[CACHE HIT]" if policy.is_cached else "[FETCHED]"
        pinned = " [PINNED]" if self._pinned else ""
        self._log("info", stages.POLICY_LOAD, f"v{policy.version} {tag}{pinned}")
        return StageOutcome(
            outputs=stages.PolicyLoadOutput(
                version=policy.version,
                cache_hit=policy.is_cached,
                pinned=self._pinned,
                signature=policy.signature_hash,
                fetch_latency_ms=self._stage_end - self._stage_start,
            ),
        )

    def _compile_rules(self) -> StageOutcome:
        compiled = compile_rules(self._rules, now_ms=self._start_time)
        self._log("info", stages.RULE_COMPILE, f"Compiled {len(compiled)} rules")
        return StageOutcome(
            inputs={"rule_count": len(self._rules)},
            outputs=stages.RuleCompileOutput(rule_count=len(self._rules), compiled_count=len(compiled)),
        )

    def _evaluate_rules(self) -> StageOutcome:
        result = evaluate_rules(self._rules, self._context, self._credentials, self._user, now_ms=self._start_time)
        self._rules_result = result
        self._log("info", stages.RULE_EVALUATION, f"Matched: {len(result.matched_rules)}")
        if result.hard_rule_override and result.forcing_rule is not None:
            self._log(
                "warn",
                stages.RULE_EVALUATION,
                f"HARD OVERRIDE: {result.forcing_rule.rule_label}",
                result.forced_credential_id,
            )
        for violation in result.violations_overridden:
            self._log(
                "warn",
                stages.RULE_EVALUATION,
                f"Exclusion overridden: {violation.constraint}",
                violation.credential_id,
            )
        return StageOutcome(
            outputs=stages.RuleEvaluationOutput(
                matched_count=len(result.matched_rules),
                failed_count=len(result.failed_rules),
                hard_override=result.hard_rule_override,
                forced_credential=result.forced_credential_id,
            ),
        )

    def _filter_candidates(self) -> StageOutcome:
        self._risk = assess_all_risks(self._credentials, self._context, self._user, self._prng, self._risk_config)
        excluded = len(self._rules_result.excluded_list)
        vetoed = [cid for cid, a in self._risk.items() if a.veto_recommendation]
        self._log(
            "info",
            stages.CANDIDATE_FILTERING,
            f"{len(self._credentials) - excluded} candidates ({excluded} excluded)",
        )
        for credential_id in vetoed:
            self._log("warn", stages.CANDIDATE_FILTERING, self._risk[credential_id].veto_reason, credential_id)
        return StageOutcome(
            outputs=stages.CandidateFilteringOutput(
                candidate_count=len(self._credentials) - excluded,
                excluded_count=excluded,
                vetoed=vetoed,
            ),
        )

    def _score(self) -> StageOutcome:
        self._scoring = score_credentials(
            self._credentials,
            self._context,
            self._user,
            self._rules_result,
            self._risk,
            self._rules_result.forced_credential_id,
        )
        top = self._scoring.top_candidate
        if top is not None:
            self._log("info", stages.OPTIMIZATION_SCORING, f"Top: {top.credential_name} ({top.final_score:.1f}/100)")
        else:
            self._log("warn", stages.OPTIMIZATION_SCORING, "No scored candidates")
        return StageOutcome(
            outputs=stages.ScoringOutput(
                candidate_count=self._scoring.candidate_count,
                top_credential=top.credential_id if top else None,
                top_score=top.final_score if top else None,
            ),
        )

    def _select_route(self) -> StageOutcome:
        rules_result = self._rules_result
        self._selected_id = select_best_credential(self._scoring, rules_result)
        self._selected = next((c for c in self._credentials if c.id == self._selected_id), None)

        top = self._scoring.top_candidate
        if rules_result.hard_rule_override and top is not None and top.credential_id != self._selected_id:
            actual = next((s for s in self._scoring.scores if s.credential_id == self._selected_id), None)
            self._shadow = ShadowOptimization(
                would_have_selected=top.credential_id,
                would_have_selected_name=top.credential_name,
                would_have_score=top.final_score,
                actual_selected=self._selected_id,
                actual_selected_name=self._selected.name if self._selected else "",
                actual_score=actual.final_score if actual else 0,
                reason=f"Hard rule override by {rules_result.forcing_rule.rule_label}",
            )
            self._log("warn", stages.ROUTE_SELECTION, f"Shadow winner: {top.credential_name} ({top.final_score:.1f})")

        name = self._selected.name if self._selected else "none"
        self._log("info", stages.ROUTE_SELECTION, f"Selected: {name}", self._selected_id)
        return StageOutcome(
            outputs=stages.RouteSelectionOutput(
                selected_credential=self._selected_id,
                is_drt=self._is_drt,
                shadow_winner=self._shadow.would_have_selected if self._shadow else None,
            ),
        )

    @property
    def _is_drt(self) -> bool:
        return self._selected is not None and self._selected.is_routing

    def _resolve_drt(self) -> StageOutcome:
        if not self._is_drt:
            self._log("info", stages.DRT_RESOLUTION, "Skipped (not DRT)")
            return StageOutcome(outputs=stages.DRTOutput(skipped=True), status=StageStatus.SKIPPED)

        self._drt = resolve_drt(
            self._selected,
            self._context,
            self._user,
            self._rules_result,
            self._prng,
            now_ms=self._clock(),
            risk_config=self._risk_config,
        )
        self._risk.update(self._drt.child_assessments)
        child = self._drt.selected_child
        self._log("info", stages.DRT_RESOLUTION, f"Resolved → {child.name}", child.id)
        return StageOutcome(
            inputs={"drt_id": self._selected.id, "strategy": self._selected.routing_strategy.value},
            outputs=stages.DRTOutput(selected_child=child.id, reason=self._drt.resolution.resolution_reason),
        )

    def _inject_credential(self) -> StageOutcome:
        self._final = self._drt.selected_child if self._is_drt and self._drt else self._selected
        dpan = self._final.dpan if self._final else None
        self._log("info", stages.CREDENTIAL_INJECTION, f"Injecting: {dpan}")
        return StageOutcome(
            outputs=stages.InjectionOutput(
                final_credential=self._final.id if self._final else None,
                final_dpan=dpan,
            ),
        )

    def _authorize(self) -> StageOutcome:
        risk = self._risk.get(self._final.id) if self._final else None
        decline_probability = (risk.decline_probability if risk else 0) or DEFAULT_DECLINE_PROBABILITY
        approved = self._prng.simulate_auth_result(decline_probability)

        self._auth = AuthorizationResult(
            approved=approved,
            auth_code=f"AUTH{self._prng.random_int(100000, 999999)}" if approved else None,
            decline_reason=None if approved else "Issuer declined",
            response_code="00" if approved else "05",
            processing_time_ms=self._latency(stages.AUTHORIZATION_GATEWAY),
            decline_probability=decline_probability,
        )
        if approved:
            self._log("info", stages.AUTHORIZATION_GATEWAY, f"Approved: {self._auth.auth_code}")
        else:
            self._log("warn", stages.AUTHORIZATION_GATEWAY, "Declined")
        return StageOutcome(
            inputs={"decline_probability": decline_probability},
            outputs=self._auth,
        )

    def _emit_audit(self) -> StageOutcome:
        self._log("info", stages.AUDIT_RECORD_EMIT, f"Emitted: {self._offset}ms total")
        return StageOutcome(
            outputs=stages.AuditEmitOutput(total_time_ms=self._offset, error_count=len(self._errors)),
        )

    # ── Audit assembly ──

    def _build_audit_record(self) -> AuditRecord:
        policy = self._policy
        rules_result = self._rules_result or RulesEngineResult()
        scoring = self._scoring
        final_risk = self._risk.get(self._final.id) if self._final else None
        resolved = self._drt if self._is_drt else None

        if rules_result.hard_rule_override and rules_result.forcing_rule is not None:
            selection_method = ForcedSelection(
                rule_id=rules_result.forcing_rule.rule_id,
                rule_label=rules_result.forcing_rule.rule_label,
            )
        else:
            selection_method = AutoSelection()

        return AuditRecord(
            correlation_id=self._correlation_id,
            replay_seed=self._seed,
            user_id=self._user.id,
            policy_version=policy.version,
            policy_signature_short=policy.signature_hash[7:15],
            policy_cache_hit=policy.is_cached,
            pinned_policy=self._pinned,
            selected_route=self._selected_id or "none",
            selected_route_name=self._selected.name if self._selected else "none",
            selected_dpan=self._final.dpan if self._final else "N/A",
            selection_method=selection_method,
            is_drt=self._is_drt,
            drt_id=self._selected_id if self._is_drt else None,
            resolved_child_credential=resolved.selected_child.id if resolved else None,
            resolved_child_name=resolved.selected_child.name if resolved else None,
            drt_resolution=resolved.resolution if resolved else None,
            hard_rule_override=rules_result.hard_rule_override,
            shadow_optimization=self._shadow,
            matched_rules=rules_result.matched_rules,
            failed_rules=rules_result.failed_rules,
            weights_used=scoring.weights_used if scoring else normalize_weights(self._user.preference_weights),
            score_breakdown=scoring.scores if scoring else [],
            candidate_scores=[s for s in scoring.scores if not s.excluded] if scoring else [],
            excluded_credentials=rules_result.excluded_list,
            violations_overridden=rules_result.violations_overridden,
            risk_score=final_risk.risk_score if final_risk else 0,
            decline_probability=final_risk.decline_probability if final_risk else 0,
            auth_result=self._auth,
            processing_time_ms=sum(s.duration_ms for s in self._stage_results),
            stage_timings=[
                StageTiming(
                    stage=s.stage_name,
                    start_offset=s.start_offset,
                    end_offset=s.end_offset,
                    duration_ms=s.duration_ms,
                )
                for s in self._stage_results
            ],
            spans=self._spans,
            errors=self._errors,
            timestamp=self._clock(),
        )
