"""
Rule DSL — compiles declarative rule conditions into predicates.

Field lookup goes through a closed accessor registry, tried in order:

  1. transaction context fields     (amount, mcc, category, country, ...)
  2. computed fields                 (projected_utilization, category_reward_rate, ...)
  3. credential fields               (apr, network, type, utilization, ...)
  4. dotted credential paths         (rewards_by_category.dining, signup_bonus.threshold)

Anything else is UNRESOLVED, and every comparison against an unresolved
value is false. Evaluation never raises; bad rules are rejected earlier by
``validate_rule`` when they enter the registry.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel

from stop_engine.schemas.policy import ActionType, Operator, Rule, RuleAction, RuleCondition
from stop_engine.schemas.transaction import (
    Credential,
    CredentialFields,
    Network,
    RoutingCredential,
    TransactionContext,
    UserProfile,
)

CredentialLike = Union[Credential, RoutingCredential]
Predicate = Callable[[TransactionContext, CredentialLike, UserProfile], bool]
Accessor = Callable[[TransactionContext, CredentialLike, UserProfile], Any]


class _Unresolved:
    __slots__ = ()

    def __repr__(self) -> str:
        return "UNRESOLVED"


UNRESOLVED: Any = _Unresolved()


# ═══════════════════════════════════════════════════════════════
# Field accessor registry
# ═══════════════════════════════════════════════════════════════

def projected_utilization(credential: CredentialLike, amount: float) -> float:
    """Utilization after this purchase; a zero limit counts as unbounded."""
    if credential.limit <= 0:
        return float("inf")
    return (credential.balance + amount) / credential.limit


def category_reward_rate(credential: CredentialLike, category: str) -> float:
    rates = credential.rewards_by_category
    return rates.get(category or "default") or rates.get("default") or 0


def _projected_utilization(ctx, cred, user):
    """Rule-field variant: non-credit or zero-limit credentials read as 0, unlike projected_utilization()."""
    if cred.type == "credit" and cred.limit > 0:
        return (cred.balance + ctx.amount) / cred.limit
    return 0


def _has_active_signup_bonus(ctx, cred, user):
    bonus = cred.signup_bonus
    return bonus is not None and bonus.current < bonus.threshold


def _signup_bonus_remaining(ctx, cred, user):
    bonus = cred.signup_bonus
    return bonus.threshold - bonus.current if bonus is not None else 0


def _network_acceptance_risk(ctx, cred, user):
    if cred.network == Network.DISCOVER:
        return "high"
    if cred.network == Network.AMEX:
        return "medium"
    return "low"


def _debit_balance_low(ctx, cred, user):
    if cred.type == "debit":
        return cred.balance < ctx.amount * 2
    return False


def _attr(name: str) -> Accessor:
    def _context(ctx, cred, user):
        return getattr(ctx, name)
    return _context


def _cred_attr(name: str) -> Accessor:
    def _credential(ctx, cred, user):
        return getattr(cred, name, UNRESOLVED)
    return _credential


CONTEXT_FIELDS: dict[str, Accessor] = {name: _attr(name) for name in TransactionContext.model_fields}

COMPUTED_FIELDS: dict[str, Accessor] = {
    "projected_utilization": _projected_utilization,
    "has_active_signup_bonus": _has_active_signup_bonus,
    "signup_bonus_remaining": _signup_bonus_remaining,
    "network_acceptance_risk": _network_acceptance_risk,
    "debit_balance_low": _debit_balance_low,
    "category_reward_rate": lambda ctx, cred, user: category_reward_rate(cred, ctx.category),
    "days_to_paycheck": lambda ctx, cred, user: user.days_to_paycheck,
    "cash_balance": lambda ctx, cred, user: user.cash_balance,
}

CREDENTIAL_FIELDS: dict[str, Accessor] = {
    name: _cred_attr(name) for name in [*CredentialFields.model_fields, "type"]
}

FIELD_REGISTRY: list[dict[str, Accessor]] = [CONTEXT_FIELDS, COMPUTED_FIELDS, CREDENTIAL_FIELDS]


def is_known_field(name: str) -> bool:
    if any(name in table for table in FIELD_REGISTRY):
        return True
    root = name.split(".", 1)[0]
    return "." in name and root in CREDENTIAL_FIELDS


def resolve_field(name: str, ctx: TransactionContext, cred: CredentialLike, user: UserProfile) -> Any:
    for table in FIELD_REGISTRY:
        accessor = table.get(name)
        if accessor is not None:
            return accessor(ctx, cred, user)

    if "." in name:
        value: Any = cred
        for part in name.split("."):
            if isinstance(value, dict):
                value = value.get(part, UNRESOLVED)
            elif isinstance(value, BaseModel) and part in type(value).model_fields:
                value = getattr(value, part)
            else:
                return UNRESOLVED
            if value is None:
                return UNRESOLVED
        return value

    return UNRESOLVED


# ═══════════════════════════════════════════════════════════════
# Operators
# ═══════════════════════════════════════════════════════════════

def is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def strict_equals(a: Any, b: Any) -> bool:
    # booleans never equal numbers
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    return a == b


def evaluate_operator(field_value: Any, operator: Union[Operator, str], condition_value: Any) -> bool:
    if field_value is UNRESOLVED:
        return False
    try:
        op = Operator(operator)
    except ValueError:
        return False

    if op is Operator.EQ:
        return strict_equals(field_value, condition_value)
    if op is Operator.NEQ:
        return not strict_equals(field_value, condition_value)
    if op is Operator.IN:
        if isinstance(condition_value, list):
            return any(strict_equals(field_value, v) for v in condition_value)
        return False
    if op is Operator.NOT_IN:
        if isinstance(condition_value, list):
            return not any(strict_equals(field_value, v) for v in condition_value)
        return True
    if op in (Operator.GT, Operator.LT, Operator.GTE, Operator.LTE):
        if not (is_number(field_value) and is_number(condition_value)):
            return False
        if op is Operator.GT:
            return field_value > condition_value
        if op is Operator.LT:
            return field_value < condition_value
        if op is Operator.GTE:
            return field_value >= condition_value
        return field_value <= condition_value
    if op is Operator.CONTAINS:
        if isinstance(field_value, str) and isinstance(condition_value, str):
            return condition_value.lower() in field_value.lower()
        if isinstance(field_value, list):
            return any(strict_equals(v, condition_value) for v in field_value)
        return False
    return False


# ═══════════════════════════════════════════════════════════════
# Compilation
# ═══════════════════════════════════════════════════════════════

def evaluate_condition(condition: RuleCondition, ctx: TransactionContext, cred: CredentialLike, user: UserProfile) -> bool:
    value = resolve_field(condition.field, ctx, cred, user)
    result = evaluate_operator(value, condition.operator, condition.value)

    # and-children take precedence; a node with both ignores its or-children
    if condition.and_:
        return result and all(evaluate_condition(c, ctx, cred, user) for c in condition.and_)
    if condition.or_:
        return result or any(evaluate_condition(c, ctx, cred, user) for c in condition.or_)
    return result


def compile_condition(condition: RuleCondition) -> Predicate:
    def predicate(ctx: TransactionContext, cred: CredentialLike, user: UserProfile) -> bool:
        return evaluate_condition(condition, ctx, cred, user)
    return predicate


@dataclass(frozen=True)
class CompiledRule:
    rule: Rule
    predicate: Predicate
    dsl_snippet: str


def compile_rule(rule: Rule) -> CompiledRule:
    return CompiledRule(
        rule=rule,
        predicate=compile_condition(rule.condition),
        dsl_snippet=rule.compiled_dsl or generate_dsl_snippet(rule),
    )


def _now_ms() -> int:
    return int(time.time() * 1000)


def is_rule_expired(rule: Rule, now_ms: Optional[int] = None) -> bool:
    if rule.expiry is None:
        return False
    return (now_ms if now_ms is not None else _now_ms()) > rule.expiry


def active_rules(rules: list[Rule]) -> list[Rule]:
    """Enabled rules in priority order (stable for equal priorities)."""
    return sorted((r for r in rules if r.enabled), key=lambda r: r.priority)


def compile_rules(rules: list[Rule], now_ms: Optional[int] = None) -> list[CompiledRule]:
    return [compile_rule(r) for r in active_rules(rules) if not is_rule_expired(r, now_ms)]


# ═══════════════════════════════════════════════════════════════
# DSL rendering
# ═══════════════════════════════════════════════════════════════

_OPERATOR_SYMBOLS = {
    Operator.EQ: "=",
    Operator.NEQ: "!=",
    Operator.IN: "IN",
    Operator.NOT_IN: "NOT IN",
    Operator.GT: ">",
    Operator.LT: "<",
    Operator.GTE: ">=",
    Operator.LTE: "<=",
    Operator.CONTAINS: "CONTAINS",
}

_FILTER_SYMBOLS = (("gt", ">"), ("lt", "<"), ("gte", ">="), ("lte", "<="))


def _plain(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def format_value(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, list):
        return "[" + ", ".join(_plain(v) for v in value) + "]"
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, dict):
        for key, symbol in _FILTER_SYMBOLS:
            if key in value:
                return f"{symbol} {_plain(value[key])}"
    return _plain(value)


def format_condition(condition: RuleCondition) -> str:
    op = _OPERATOR_SYMBOLS.get(Operator(condition.operator), str(condition.operator))
    result = f"{condition.field} {op} {format_value(condition.value)}"

    if condition.and_:
        parts = " AND ".join(format_condition(c) for c in condition.and_)
        result = f"({result} AND {parts})"
    if condition.or_:
        parts = " OR ".join(format_condition(c) for c in condition.or_)
        result = f"({result} OR {parts})"
    return result


def format_action(action: RuleAction) -> str:
    if action.type is ActionType.FORCE:
        return f"FORCE {action.target_credential_id or 'credential'}"
    if action.type is ActionType.EXCLUDE:
        if action.target_property:
            return f"EXCLUDE credentials WHERE {action.target_property} {format_value(action.target_property_value)}"
        return "EXCLUDE credential"
    if action.type is ActionType.BOOST:
        return f"BOOST score +{_plain(action.boost_amount or 0)}"
    if action.type is ActionType.PENALIZE:
        return f"PENALIZE score -{_plain(action.penalty_amount or 0)}"
    if action.type is ActionType.BLOCK:
        return "BLOCK transaction"
    return str(action.type)


def generate_dsl_snippet(rule: Rule) -> str:
    return f"IF {format_condition(rule.condition)} THEN {format_action(rule.action)}"


# ═══════════════════════════════════════════════════════════════
# Validation (rule-load time)
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RuleValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)


def _condition_fields(condition: RuleCondition) -> list[str]:
    names = [condition.field]
    for child in (condition.and_ or []) + (condition.or_ or []):
        names.extend(_condition_fields(child))
    return names


def validate_rule(rule: Rule) -> RuleValidation:
    errors: list[str] = []

    if not rule.id:
        errors.append("Rule ID is required")
    if not rule.label:
        errors.append("Rule label is required")

    for name in _condition_fields(rule.condition):
        if not name:
            errors.append("Condition field is required")
        elif not is_known_field(name):
            errors.append(f"Unknown condition field: {name}")

    if not rule.action.reason:
        errors.append("Action reason is required")
    if rule.action.type is ActionType.FORCE:
        if not rule.action.target_credential_id:
            errors.append("FORCE action requires target_credential_id")
    if rule.action.target_property and rule.action.target_property not in CREDENTIAL_FIELDS:
        errors.append(f"Unknown target property: {rule.action.target_property}")

    return RuleValidation(valid=not errors, errors=errors)
