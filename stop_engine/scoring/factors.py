"""
Routing subscores — four criteria, each on a 0-100 scale.

Each subscore:
  1. Reads the credential, the transaction and the user profile
  2. Maps them onto a tier
  3. Returns raw + normalized (clamped) values and human-readable factors

Weights are applied in the engine, not here.

Convention: HIGHER score = BETTER route for this purchase.
"""
from __future__ import annotations

from typing import Optional, Union

from stop_engine.rules.dsl import category_reward_rate, projected_utilization
from stop_engine.schemas.decision import RiskAssessment, SubscoreBreakdown
from stop_engine.schemas.transaction import (
    Credential,
    RoutingCredential,
    TransactionContext,
    UserProfile,
)

CredentialLike = Union[Credential, RoutingCredential]


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def round2(n: float) -> float:
    return round(n, 2)


def _subscore(raw: float, factors: list[str]) -> SubscoreBreakdown:
    return SubscoreBreakdown(raw=round2(raw), normalized=round2(clamp(raw, 0, 100)), factors=factors)


# ═══════════════════════════════════════════════════════════════
# 1. REWARDS
#    category rate × 15, +20 for a reachable signup bonus, + cashback × 5
# ═══════════════════════════════════════════════════════════════
def score_rewards(credential: CredentialLike, context: TransactionContext) -> SubscoreBreakdown:
    category = context.category or "default"
    rate = category_reward_rate(credential, context.category)
    factors = [f'Category "{category}" rate: {rate:g}x']

    raw = rate * 15

    bonus = credential.signup_bonus
    if bonus is not None:
        remaining = bonus.threshold - bonus.current
        # this purchase gets the user close enough to the threshold to count
        if 0 < remaining <= context.amount * 1.5:
            raw += 20
            factors.append(f"Signup bonus: ${remaining:g} remaining to earn {bonus.reward:g} pts")

    if credential.cashback_rate > 0:
        raw += credential.cashback_rate * 5
        factors.append(f"Base cashback: {credential.cashback_rate:g}%")

    return _subscore(raw, factors)


# ═══════════════════════════════════════════════════════════════
# 2. CREDIT HEALTH
#    projected utilization after this purchase, credit cards only
# ═══════════════════════════════════════════════════════════════
def score_credit(credential: CredentialLike, context: TransactionContext) -> SubscoreBreakdown:
    if credential.type != "credit":
        return _subscore(50, ["Non-credit card: neutral score"])

    util = projected_utilization(credential, context.amount)
    factors = [
        f"Current utilization: {credential.utilization * 100:.1f}%",
        f"Projected utilization: {util * 100:.1f}%",
    ]

    if util <= 0.10:
        raw = 100.0
        factors.append("Excellent: under 10% utilization")
    elif util <= 0.30:
        raw = 90 - (util - 0.10) * 100
        factors.append("Good: under 30% utilization")
    elif util <= 0.50:
        raw = 70 - (util - 0.30) * 100
        factors.append("Fair: under 50% utilization")
    elif util <= 0.70:
        raw = 50 - (util - 0.50) * 150
        factors.append("Warning: approaching high utilization")
    elif util <= 0.90:
        raw = 20 - (util - 0.70) * 50
        factors.append("Critical: high utilization impact")
    else:
        raw = 5.0
        factors.append("Near limit: severe credit impact")

    return _subscore(raw, factors)


# ═══════════════════════════════════════════════════════════════
# 3. CASHFLOW
#    debit: balance buffer after the purchase
#    credit: days until the next paycheck, minus a high-APR penalty
# ═══════════════════════════════════════════════════════════════
def score_cashflow(credential: CredentialLike, context: TransactionContext, user: UserProfile) -> SubscoreBreakdown:
    factors: list[str] = []

    if credential.type == "debit":
        remaining = credential.balance - context.amount
        factors.append(f"Balance: ${credential.balance:.2f}")
        factors.append(f"After txn: ${remaining:.2f}")

        if remaining < 0:
            raw = 0.0
            factors.append("Insufficient funds")
        else:
            ratio = remaining / context.amount if context.amount > 0 else float("inf")
            if ratio >= 5:
                raw = 95.0
                factors.append("Excellent buffer (5x+)")
            elif ratio >= 3:
                raw = 80.0
                factors.append("Good buffer (3-5x)")
            elif ratio >= 2:
                raw = 65.0
                factors.append("Adequate buffer (2-3x)")
            elif ratio >= 1:
                raw = 45.0
                factors.append("Tight buffer (1-2x)")
            else:
                raw = 25.0
                factors.append("Low buffer (<1x)")

    elif credential.type == "credit":
        factors.append(f"Days to paycheck: {user.days_to_paycheck}")
        factors.append(f"APR: {credential.apr:g}%")

        if user.days_to_paycheck <= 3:
            raw = 95.0
            factors.append("Paycheck imminent: credit ideal")
        elif user.days_to_paycheck <= 7:
            raw = 85.0
            factors.append("Paycheck soon: credit preferred")
        elif user.days_to_paycheck <= 14:
            raw = 70.0
            factors.append("Mid-cycle: credit acceptable")
        else:
            raw = 55.0
            factors.append("Early cycle: consider APR cost")

        if credential.apr > 25:
            raw -= 10
            factors.append("High APR penalty")

    else:
        raw = 50.0
        factors.append(f"{credential.type.capitalize()}: neutral cashflow")

    return _subscore(raw, factors)


# ═══════════════════════════════════════════════════════════════
# 4. RISK
#    inverse of the risk engine's score
# ═══════════════════════════════════════════════════════════════
def score_risk(assessment: Optional[RiskAssessment]) -> SubscoreBreakdown:
    if assessment is None:
        return _subscore(50, ["No risk assessment available"])

    raw = (1 - assessment.risk_score) * 100
    factors = [
        f"Risk score: {assessment.risk_score * 100:.1f}%",
        f"Decline probability: {assessment.decline_probability * 100:.1f}%",
    ]
    factors.extend(f"⚠ {f}" for f in assessment.risk_factors[:3])
    if assessment.veto_recommendation:
        factors.append("⛔ VETO RECOMMENDED")

    return _subscore(raw, factors)
