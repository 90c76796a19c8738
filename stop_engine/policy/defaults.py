"""
Seed policy content — the baseline rule set shipped with the engine.

Versions are cumulative: 1.0.0 carries the first five rules, 1.1.0 the
first seven, 2.0.0 all of them. Rules can be adjusted through the policy
admin API afterwards; ``PolicyRegistry.reset()`` restores this baseline.
"""
from __future__ import annotations

from stop_engine.schemas.policy import (
    ActionType,
    Operator,
    Rule,
    RuleAction,
    RuleCondition,
    RuleType,
)


def sample_rules() -> list[Rule]:
    return [
        Rule(
            id="rule_util_guard",
            label="Utilization Guard",
            type=RuleType.HARD,
            priority=1,
            condition=RuleCondition(field="projected_utilization", operator=Operator.GT, value=0.9),
            action=RuleAction(type=ActionType.EXCLUDE, reason="Would push utilization above 90%"),
        ),
        Rule(
            id="rule_debit_buffer",
            label="Debit Balance Buffer",
            type=RuleType.HARD,
            priority=2,
            condition=RuleCondition(field="debit_balance_low", operator=Operator.EQ, value=True),
            action=RuleAction(type=ActionType.EXCLUDE, reason="Debit balance under 2x transaction amount"),
        ),
        Rule(
            id="rule_dining_boost",
            label="Dining Rewards Boost",
            type=RuleType.SOFT,
            priority=3,
            condition=RuleCondition(
                field="category",
                operator=Operator.EQ,
                value="dining",
                and_=[RuleCondition(field="category_reward_rate", operator=Operator.GTE, value=3)],
            ),
            action=RuleAction(type=ActionType.BOOST, boost_amount=5, reason="3x+ dining multiplier"),
        ),
        Rule(
            id="rule_signup_chase",
            label="Signup Bonus Progress",
            type=RuleType.SOFT,
            priority=4,
            condition=RuleCondition(field="has_active_signup_bonus", operator=Operator.EQ, value=True),
            action=RuleAction(type=ActionType.BOOST, boost_amount=8, reason="Counts toward an open signup bonus"),
        ),
        Rule(
            id="rule_high_apr",
            label="High APR Penalty",
            type=RuleType.SOFT,
            priority=5,
            condition=RuleCondition(field="apr", operator=Operator.GT, value=25),
            action=RuleAction(type=ActionType.PENALIZE, penalty_amount=5, reason="APR above 25%"),
        ),
        # ── 1.1.0 ──
        Rule(
            id="rule_travel_ftf",
            label="Foreign Transaction Fee",
            type=RuleType.SOFT,
            priority=6,
            condition=RuleCondition(
                field="country",
                operator=Operator.NEQ,
                value="US",
                and_=[RuleCondition(field="ftf", operator=Operator.GT, value=0)],
            ),
            action=RuleAction(type=ActionType.PENALIZE, penalty_amount=10, reason="Card charges a foreign transaction fee"),
        ),
        Rule(
            id="rule_gas_boost",
            label="Gas Station Boost",
            type=RuleType.SOFT,
            priority=7,
            condition=RuleCondition(
                field="mcc",
                operator=Operator.IN,
                value=[5541, 5542],
                and_=[RuleCondition(field="category_reward_rate", operator=Operator.GTE, value=2)],
            ),
            action=RuleAction(type=ActionType.BOOST, boost_amount=4, reason="2x+ on fuel"),
        ),
        # ── 2.0.0 ──
        Rule(
            id="rule_acceptance_abroad",
            label="Network Acceptance Abroad",
            type=RuleType.SOFT,
            priority=8,
            condition=RuleCondition(
                field="network_acceptance_risk",
                operator=Operator.EQ,
                value="high",
                and_=[RuleCondition(field="country", operator=Operator.NEQ, value="US")],
            ),
            action=RuleAction(type=ActionType.PENALIZE, penalty_amount=6, reason="Weak network acceptance outside the US"),
        ),
        Rule(
            id="rule_prepaid_cap",
            label="Prepaid Large Purchase Cap",
            type=RuleType.HARD,
            priority=9,
            condition=RuleCondition(field="amount", operator=Operator.GT, value=1000),
            action=RuleAction(
                type=ActionType.EXCLUDE,
                target_property="type",
                target_property_value="prepaid",
                reason="Prepaid cards capped at $1000",
            ),
        ),
        Rule(
            id="rule_grocery_drt",
            label="Groceries via Everyday Router",
            type=RuleType.HARD,
            priority=10,
            enabled=False,
            condition=RuleCondition(field="mcc", operator=Operator.EQ, value=5411),
            action=RuleAction(
                type=ActionType.FORCE,
                target_credential_id="drt_everyday",
                reason="Grocery spend routed through the everyday DRT",
            ),
        ),
    ]


# (version, days before now, rule count, description, cached)
DEFAULT_VERSIONS: list[tuple[str, int, int, str, bool]] = [
    ("1.0.0", 90, 5, "Initial policy release - basic routing rules", False),
    ("1.1.0", 45, 7, "Added travel and gas station rules", False),
    ("2.0.0", 7, 10, "Complete rule set with boost/penalize actions", True),
]
