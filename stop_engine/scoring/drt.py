"""
DRT resolution — picks the child credential a routing credential settles on.

Strategies:
  optimal_score       score every eligible child, take the top one
  round_robin         PRNG-chosen child; children are still scored for the audit
  lowest_utilization  least-utilized child; children are still scored for the audit

Children go through the same risk + scoring pipeline as top-level
credentials, reusing the parent run's rule evaluation.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional

import structlog

from stop_engine.core.exceptions import NoEligibleChildrenError
from stop_engine.core.prng import PRNG
from stop_engine.rules.engine import RulesEngineResult
from stop_engine.schemas.decision import DRTResolution, RiskAssessment, ScoreBreakdown
from stop_engine.schemas.transaction import (
    Credential,
    RoutingCredential,
    RoutingStrategy,
    TransactionContext,
    UserProfile,
)
from stop_engine.scoring.engine import score_credentials
from stop_engine.scoring.risk import RiskEngineConfig, assess_all_risks

logger = structlog.get_logger()


@dataclass
class DRTResolutionResult:
    resolution: DRTResolution
    child_scores: list[ScoreBreakdown]
    selected_child: Credential
    child_assessments: dict[str, RiskAssessment] = field(default_factory=dict)


def resolve_drt(
    drt: RoutingCredential,
    context: TransactionContext,
    user: UserProfile,
    rules_result: RulesEngineResult,
    prng: PRNG,
    now_ms: Optional[int] = None,
    risk_config: Optional[RiskEngineConfig] = None,
) -> DRTResolutionResult:
    children = [c for c in drt.children if c.is_eligible]
    if not children:
        raise NoEligibleChildrenError(f"DRT {drt.id} has no eligible child DPANs")

    assessments: dict[str, RiskAssessment] = {}

    def _score_children():
        assessments.update(assess_all_risks(children, context, user, prng, risk_config))
        return score_credentials(children, context, user, rules_result, assessments)

    strategy = drt.routing_strategy

    if strategy is RoutingStrategy.OPTIMAL_SCORE:
        scoring = _score_children()
        child_scores = scoring.scores
        if scoring.top_candidate is not None:
            top_id = scoring.top_candidate.credential_id
            selected = next(c for c in children if c.id == top_id)
            reason = f"Optimal score: {scoring.top_candidate.final_score:.2f}"
        else:
            selected = children[0]
            reason = "Fallback: no scored candidates"

    elif strategy is RoutingStrategy.ROUND_ROBIN:
        index = prng.random_int(0, len(children) - 1)
        selected = children[index]
        reason = f"Round robin: index {index}"
        child_scores = _score_children().scores

    else:  # lowest_utilization; min() keeps the first child on ties
        selected = min(children, key=lambda c: c.utilization)
        reason = f"Lowest utilization: {selected.utilization * 100:.1f}%"
        child_scores = _score_children().scores

    logger.debug("drt_resolved", drt_id=drt.id, child_id=selected.id, strategy=strategy.value)

    resolution = DRTResolution(
        drt_id=drt.id,
        selected_child=selected,
        child_scores=child_scores,
        resolution_reason=reason,
        timestamp=now_ms if now_ms is not None else int(time.time() * 1000),
    )
    return DRTResolutionResult(
        resolution=resolution,
        child_scores=child_scores,
        selected_child=selected,
        child_assessments=assessments,
    )


def get_drt_by_id(drts: list[RoutingCredential], drt_id: str) -> Optional[RoutingCredential]:
    return next((d for d in drts if d.id == drt_id), None)


def get_all_drt_children(drts: list[RoutingCredential]) -> list[Credential]:
    return [child for d in drts for child in d.children]


def format_drt_resolution(result: DRTResolutionResult) -> str:
    child = result.selected_child
    return f"DRT[{result.resolution.drt_id}] → {child.name} ({child.dpan}) | {result.resolution.resolution_reason}"
