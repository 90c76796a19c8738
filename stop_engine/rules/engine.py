"""
Rules Engine — runs the active policy against every eligible credential.

Per rule, in priority order:
  FORCE     (HARD only) pins the route to a credential
  EXCLUDE   removes matching credentials, optionally gated on a property
  BOOST     adds points to matching credentials
  PENALIZE  subtracts points from matching credentials
  BLOCK     removes every matching credential unconditionally

Exclusions are queued while the rules run and reconciled at the end: an
exclusion that hits the forced credential becomes a ViolationOverride
instead. Evaluation never raises.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

import structlog

from stop_engine.rules.dsl import (
    UNRESOLVED,
    active_rules,
    compile_rule,
    is_number,
    is_rule_expired,
    strict_equals,
)
from stop_engine.schemas.decision import (
    ExcludedCredential,
    RuleEvaluationResult,
    ViolationOverride,
)
from stop_engine.schemas.policy import ActionType, Rule, RuleType
from stop_engine.schemas.transaction import (
    Credential,
    Network,
    RoutingCredential,
    TransactionContext,
    UserProfile,
)

logger = structlog.get_logger()

STAGE = "Rule Evaluation"

CredentialLike = Union[Credential, RoutingCredential]

# Stand-in for rules whose condition only looks at context or user fields.
PLACEHOLDER_CREDENTIAL = Credential(
    id="placeholder",
    name="Placeholder",
    dpan="**** 0000",
    type="credit",
    network=Network.VISA,
)


@dataclass
class ForcingRule:
    rule_id: str
    rule_label: str


@dataclass
class RulesEngineResult:
    hard_rule_override: bool = False
    forced_credential_id: Optional[str] = None
    forced_credential_name: Optional[str] = None
    forcing_rule: Optional[ForcingRule] = None
    excluded: dict[str, str] = field(default_factory=dict)
    excluded_list: list[ExcludedCredential] = field(default_factory=list)
    violations_overridden: list[ViolationOverride] = field(default_factory=list)
    boosts: dict[str, float] = field(default_factory=dict)
    boost_rule_ids: dict[str, str] = field(default_factory=dict)
    penalties: dict[str, float] = field(default_factory=dict)
    penalty_rule_ids: dict[str, str] = field(default_factory=dict)
    matched_rules: list[RuleEvaluationResult] = field(default_factory=list)
    failed_rules: list[RuleEvaluationResult] = field(default_factory=list)


@dataclass
class _PendingExclusion:
    reason: str
    rule_id: str
    credential_name: str


_NUMERIC_FILTERS = {
    "gt": lambda a, b: a > b,
    "lt": lambda a, b: a < b,
    "gte": lambda a, b: a >= b,
    "lte": lambda a, b: a <= b,
}


def matches_target(rule: Rule, credential: CredentialLike) -> bool:
    """Property gate for EXCLUDE / BOOST / PENALIZE; no target property means every match applies."""
    action = rule.action
    if not action.target_property:
        return True

    value = getattr(credential, action.target_property, UNRESOLVED)
    if value is UNRESOLVED:
        return False

    target = action.target_property_value
    if isinstance(target, dict):
        for key, compare in _NUMERIC_FILTERS.items():
            if key in target:
                if not (is_number(value) and is_number(target[key])):
                    return False
                return compare(value, target[key])
    return strict_equals(value, target)


def _failed(rule: Rule, reason: str, dsl_snippet: str) -> RuleEvaluationResult:
    return RuleEvaluationResult(
        rule_id=rule.id,
        rule_label=rule.label,
        rule_type=rule.type,
        matched=False,
        reason=reason,
        dsl_snippet=dsl_snippet,
    )


def evaluate_rules(
    rules: list[Rule],
    context: TransactionContext,
    credentials: list[CredentialLike],
    user: UserProfile,
    now_ms: Optional[int] = None,
) -> RulesEngineResult:
    result = RulesEngineResult()
    pending: dict[str, _PendingExclusion] = {}
    names = {c.id: c.name for c in credentials}

    for rule in active_rules(rules):
        compiled = compile_rule(rule)

        if is_rule_expired(rule, now_ms):
            result.failed_rules.append(_failed(rule, "Rule has expired", compiled.dsl_snippet))
            continue

        action = rule.action
        matched = False

        for credential in credentials:
            if not credential.is_eligible:
                continue
            if not compiled.predicate(context, credential, user):
                continue
            matched = True

            if action.type is ActionType.FORCE:
                if rule.type is RuleType.HARD:
                    result.hard_rule_override = True
                    result.forced_credential_id = action.target_credential_id
                    result.forced_credential_name = names.get(action.target_credential_id)
                    result.forcing_rule = ForcingRule(rule_id=rule.id, rule_label=rule.label)

            elif action.type is ActionType.EXCLUDE:
                if matches_target(rule, credential):
                    pending[credential.id] = _PendingExclusion(action.reason, rule.id, credential.name)

            elif action.type is ActionType.BOOST:
                if matches_target(rule, credential):
                    result.boosts[credential.id] = result.boosts.get(credential.id, 0) + (action.boost_amount or 0)
                    result.boost_rule_ids[credential.id] = rule.id

            elif action.type is ActionType.PENALIZE:
                if matches_target(rule, credential):
                    result.penalties[credential.id] = result.penalties.get(credential.id, 0) + (action.penalty_amount or 0)
                    result.penalty_rule_ids[credential.id] = rule.id

            elif action.type is ActionType.BLOCK:
                pending[credential.id] = _PendingExclusion("Transaction blocked by rule", rule.id, credential.name)

        if not matched:
            matched = compiled.predicate(context, PLACEHOLDER_CREDENTIAL, user)

        if matched:
            result.matched_rules.append(RuleEvaluationResult(
                rule_id=rule.id,
                rule_label=rule.label,
                rule_type=rule.type,
                matched=True,
                reason=action.reason,
                action=action.type.value,
                forced_credential=action.target_credential_id if action.type is ActionType.FORCE else None,
                dsl_snippet=compiled.dsl_snippet,
            ))
        else:
            result.failed_rules.append(_failed(rule, "Condition not satisfied", compiled.dsl_snippet))

    # ── Reconcile exclusions against the forced credential ──
    for credential_id, exclusion in pending.items():
        if result.hard_rule_override and credential_id == result.forced_credential_id:
            result.violations_overridden.append(ViolationOverride(
                credential_id=credential_id,
                credential_name=exclusion.credential_name,
                constraint=exclusion.reason,
                overridden_by=result.forcing_rule.rule_label if result.forcing_rule else "Hard Rule",
                rule_id=exclusion.rule_id,
            ))
        else:
            result.excluded[credential_id] = exclusion.reason
            result.excluded_list.append(ExcludedCredential(
                credential_id=credential_id,
                credential_name=exclusion.credential_name,
                reason=exclusion.reason,
                rule_id=exclusion.rule_id,
                stage=STAGE,
            ))

    logger.debug(
        "rules_evaluated",
        matched=len(result.matched_rules),
        failed=len(result.failed_rules),
        excluded=len(result.excluded),
        hard_override=result.hard_rule_override,
    )
    return result


def get_rules_summary(result: RulesEngineResult) -> dict[str, int]:
    return {
        "total_matched": len(result.matched_rules),
        "hard_overrides": 1 if result.hard_rule_override else 0,
        "exclusions": len(result.excluded),
        "violations_overridden": len(result.violations_overridden),
        "boosts": len(result.boosts),
        "penalties": len(result.penalties),
    }
