"""
Risk Engine — per-credential risk score, decline probability and veto.

Additive point model over transaction context, risk flags and credential
state, scaled by the user's risk tolerance, jittered by two PRNG draws and
normalized to 0-1. Risk ≥ veto threshold → veto recommendation.

Each assessment consumes exactly two PRNG draws, so assessment order is
part of the replay contract.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

from stop_engine.core.config import get_settings
from stop_engine.core.prng import PRNG
from stop_engine.rules.dsl import projected_utilization
from stop_engine.schemas.decision import RiskAssessment
from stop_engine.schemas.transaction import (
    Credential,
    Network,
    RiskTolerance,
    RoutingCredential,
    TransactionContext,
    UserProfile,
)

CredentialLike = Union[Credential, RoutingCredential]

MAX_POINTS = 100.0

# flag → (points, factor label)
RISK_FLAG_POINTS: dict[str, tuple[int, str]] = {
    "high_amount": (10, "Amount anomaly"),
    "new_merchant": (12, "New merchant"),
    "velocity_spike": (18, "Velocity spike"),
    "geo_anomaly": (15, "Geographic anomaly"),
    "time_anomaly": (6, "Unusual time"),
    "device_change": (12, "New device"),
}

TOLERANCE_MULTIPLIERS = {
    RiskTolerance.LOW: 1.15,
    RiskTolerance.MEDIUM: 1.0,
    RiskTolerance.HIGH: 0.85,
}


@dataclass(frozen=True)
class AmountThresholds:
    low: float
    medium: float
    high: float


def _default_thresholds() -> AmountThresholds:
    s = get_settings()
    return AmountThresholds(
        low=s.amount_threshold_low,
        medium=s.amount_threshold_medium,
        high=s.amount_threshold_high,
    )


@dataclass(frozen=True)
class RiskEngineConfig:
    veto_threshold: float = field(default_factory=lambda: get_settings().veto_threshold)
    amount_thresholds: AmountThresholds = field(default_factory=_default_thresholds)


def assess_risk(
    credential: CredentialLike,
    context: TransactionContext,
    user: UserProfile,
    prng: PRNG,
    config: Optional[RiskEngineConfig] = None,
) -> RiskAssessment:
    config = config or RiskEngineConfig()
    tiers = config.amount_thresholds
    factors: list[str] = []
    points = 0.0

    # ── Amount ──
    if context.amount > tiers.high:
        points += 20
        factors.append(f"High amount (${context.amount:.0f})")
    elif context.amount > tiers.medium:
        points += 10
        factors.append(f"Medium amount (${context.amount:.0f})")
    elif context.amount > tiers.low:
        points += 3

    # ── Context ──
    if context.country != "US":
        points += 12
        factors.append(f"International ({context.country})")
    if not context.is_in_person:
        points += 8
        factors.append("Card not present")

    for flag, (flag_points, label) in RISK_FLAG_POINTS.items():
        if flag in context.risk_flags:
            points += flag_points
            factors.append(label)

    # ── Credential ──
    if credential.type == "credit":
        util = projected_utilization(credential, context.amount)
        if util > 0.9:
            points += 15
            factors.append("Near credit limit")
        elif util > 0.7:
            points += 8
            factors.append("High utilization")

    if credential.type == "debit" and credential.balance < context.amount * 1.5:
        points += 12
        factors.append("Low debit balance")

    if credential.network == Network.DISCOVER:
        points += 4
        factors.append("Lower network acceptance")
    if credential.network == Network.AMEX and context.country != "US":
        points += 6
        factors.append("Amex international")

    points *= TOLERANCE_MULTIPLIERS.get(user.risk_tolerance, 1.0)
    points += (prng.random() - 0.5) * 10

    risk_score = max(0.0, min(1.0, points / MAX_POINTS))
    decline_probability = max(0.0, min(1.0, risk_score + (prng.random() - 0.5) * 0.05))

    veto = risk_score >= config.veto_threshold
    veto_reason = None
    if veto:
        veto_reason = f"Risk {risk_score * 100:.1f}% exceeds threshold {config.veto_threshold * 100:.0f}%"

    return RiskAssessment(
        credential_id=credential.id,
        risk_score=round(risk_score, 3),
        decline_probability=round(decline_probability, 3),
        risk_factors=factors,
        veto_recommendation=veto,
        veto_reason=veto_reason,
    )


def assess_all_risks(
    credentials: list[CredentialLike],
    context: TransactionContext,
    user: UserProfile,
    prng: PRNG,
    config: Optional[RiskEngineConfig] = None,
) -> dict[str, RiskAssessment]:
    """Assessments keyed by credential id, in credential order."""
    return {c.id: assess_risk(c, context, user, prng, config) for c in credentials}


def get_lowest_risk_credential(
    assessments: dict[str, RiskAssessment],
    eligible_ids: list[str],
) -> Optional[str]:
    lowest: Optional[str] = None
    lowest_score = float("inf")
    for credential_id in eligible_ids:
        assessment = assessments.get(credential_id)
        if assessment is None or assessment.veto_recommendation:
            continue
        if assessment.risk_score < lowest_score:
            lowest_score = assessment.risk_score
            lowest = credential_id
    return lowest
