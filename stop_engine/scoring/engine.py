"""
Optimization Scoring Engine

Orchestrates:
  1. Exclusion gates (eligibility, rule exclusions, risk veto)
  2. The four subscores per surviving credential
  3. Weighted composite + rule boosts / penalties
  4. Ranking and route selection
  5. Weight sensitivity analysis

A forced credential always passes the exclusion gates.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

import structlog

from stop_engine.rules.engine import RulesEngineResult
from stop_engine.schemas.decision import (
    RiskAssessment,
    ScoreAdjustment,
    ScoreBreakdown,
    SensitivityResult,
    SubscoreBreakdown,
    Subscores,
)
from stop_engine.schemas.transaction import (
    CRITERIA,
    Credential,
    RoutingCredential,
    ScoringWeights,
    TransactionContext,
    UserProfile,
)
from stop_engine.scoring.factors import (
    clamp,
    round2,
    score_cashflow,
    score_credit,
    score_rewards,
    score_risk,
)

logger = structlog.get_logger()

CredentialLike = Union[Credential, RoutingCredential]


@dataclass
class ScoringResult:
    scores: list[ScoreBreakdown]
    top_candidate: Optional[ScoreBreakdown]
    candidate_count: int
    excluded_count: int
    weights_used: ScoringWeights


def normalize_weights(weights: ScoringWeights) -> ScoringWeights:
    total = weights.total
    if total == 0:
        return ScoringWeights()
    return ScoringWeights(
        rewards=weights.rewards / total,
        credit=weights.credit / total,
        cashflow=weights.cashflow / total,
        risk=weights.risk / total,
    )


def _excluded_score(credential: CredentialLike, reason: str, stage: str) -> ScoreBreakdown:
    return ScoreBreakdown(
        credential_id=credential.id,
        credential_name=credential.name,
        subscores=Subscores(
            rewards=SubscoreBreakdown(),
            credit=SubscoreBreakdown(),
            cashflow=SubscoreBreakdown(),
            risk=SubscoreBreakdown(),
        ),
        excluded=True,
        exclusion_reason=reason,
        exclusion_stage=stage,
    )


def _weighted(subscore: SubscoreBreakdown, weight: float) -> SubscoreBreakdown:
    return subscore.model_copy(update={"weight": weight, "weighted": round2(subscore.normalized * weight)})


def score_credentials(
    credentials: list[CredentialLike],
    context: TransactionContext,
    user: UserProfile,
    rules_result: RulesEngineResult,
    risk_assessments: dict[str, RiskAssessment],
    forced_credential_id: Optional[str] = None,
) -> ScoringResult:
    weights = normalize_weights(user.preference_weights)
    candidates: list[ScoreBreakdown] = []
    excluded: list[ScoreBreakdown] = []

    for credential in credentials:
        forced = credential.id == forced_credential_id

        # ── Exclusion gates ──
        if not credential.is_eligible and not forced:
            excluded.append(_excluded_score(credential, "Credential not eligible", "Profile Fetch"))
            continue

        reason = rules_result.excluded.get(credential.id)
        if reason and not forced:
            excluded.append(_excluded_score(credential, reason, "Rule Evaluation"))
            continue

        assessment = risk_assessments.get(credential.id)
        if assessment is not None and assessment.veto_recommendation and not rules_result.hard_rule_override and not forced:
            excluded.append(_excluded_score(credential, assessment.veto_reason or "Risk veto", "Candidate Filtering"))
            continue

        # ── Subscores ──
        subscores = Subscores(
            rewards=_weighted(score_rewards(credential, context), weights.rewards),
            credit=_weighted(score_credit(credential, context), weights.credit),
            cashflow=_weighted(score_cashflow(credential, context, user), weights.cashflow),
            risk=_weighted(score_risk(assessment), weights.risk),
        )
        base_score = round2(sum(getattr(subscores, c).weighted for c in CRITERIA))

        # ── Rule adjustments ──
        bonuses: list[ScoreAdjustment] = []
        penalties: list[ScoreAdjustment] = []
        boost = rules_result.boosts.get(credential.id)
        if boost:
            bonuses.append(ScoreAdjustment(label="Rule boost", amount=boost, rule_id=rules_result.boost_rule_ids.get(credential.id)))
        penalty = rules_result.penalties.get(credential.id)
        if penalty:
            penalties.append(ScoreAdjustment(label="Rule penalty", amount=penalty, rule_id=rules_result.penalty_rule_ids.get(credential.id)))

        total_bonuses = sum(b.amount for b in bonuses)
        total_penalties = sum(p.amount for p in penalties)

        candidates.append(ScoreBreakdown(
            credential_id=credential.id,
            credential_name=credential.name,
            subscores=subscores,
            bonuses=bonuses,
            penalties=penalties,
            total_bonuses=total_bonuses,
            total_penalties=total_penalties,
            base_score=base_score,
            final_score=round2(clamp(base_score + total_bonuses - total_penalties, 0, 100)),
        ))

    # ── Ranking: candidates by score (stable), excluded after ──
    candidates.sort(key=lambda s: s.final_score, reverse=True)
    ranked = candidates + excluded
    for i, score in enumerate(ranked):
        score.ranking = i + 1

    logger.debug(
        "credentials_scored",
        candidates=len(candidates),
        excluded=len(excluded),
        top=candidates[0].credential_id if candidates else None,
    )

    return ScoringResult(
        scores=ranked,
        top_candidate=candidates[0] if candidates else None,
        candidate_count=len(candidates),
        excluded_count=len(excluded),
        weights_used=weights,
    )


def select_best_credential(scoring_result: ScoringResult, rules_result: RulesEngineResult) -> Optional[str]:
    if rules_result.hard_rule_override and rules_result.forced_credential_id:
        return rules_result.forced_credential_id
    if scoring_result.top_candidate is not None:
        return scoring_result.top_candidate.credential_id
    return None


# ═══════════════════════════════════════════════════════════════
# Sensitivity: does a small weight nudge flip the winner?
# ═══════════════════════════════════════════════════════════════

def _rescore(score: ScoreBreakdown, weights: ScoringWeights) -> float:
    base = sum(getattr(score.subscores, c).normalized * getattr(weights, c) for c in CRITERIA)
    return clamp(base + score.total_bonuses - score.total_penalties, 0, 100)


def _leader(scores: list[ScoreBreakdown], weights: ScoringWeights) -> tuple[ScoreBreakdown, float]:
    best, best_value = scores[0], _rescore(scores[0], weights)
    for score in scores[1:]:
        value = _rescore(score, weights)
        if value > best_value:
            best, best_value = score, value
    return best, best_value


def compute_sensitivity(
    scores: list[ScoreBreakdown],
    weights: ScoringWeights,
    perturbation: float = 0.10,
) -> list[SensitivityResult]:
    active = [s for s in scores if not s.excluded]
    if len(active) < 2:
        return []

    original, _ = _leader(active, weights)
    results: list[SensitivityResult] = []

    for criterion in CRITERIA:
        for direction in ("increase", "decrease"):
            delta = perturbation if direction == "increase" else -perturbation
            values = weights.model_dump()
            values[criterion] = clamp(values[criterion] + delta, 0, 1)
            total = sum(values.values())
            if total > 0:
                values = {k: v / total for k, v in values.items()}

            winner, winner_score = _leader(active, ScoringWeights(**values))
            results.append(SensitivityResult(
                criterion=criterion,
                direction=direction,
                perturbation=perturbation,
                original_winner=original.credential_id,
                new_winner=winner.credential_id,
                winner_changed=winner.credential_id != original.credential_id,
                new_score=round2(winner_score),
            ))

    return results
