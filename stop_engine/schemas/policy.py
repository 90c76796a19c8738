"""
Routing rules and versioned policy sets.

Rules are long-lived, owned by the PolicyRegistry and only changed through
its CRUD surface.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class RuleType(str, Enum):
    HARD = "HARD"
    SOFT = "SOFT"


class Operator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    IN = "in"
    NOT_IN = "not_in"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    CONTAINS = "contains"


class ActionType(str, Enum):
    FORCE = "FORCE"
    EXCLUDE = "EXCLUDE"
    BOOST = "BOOST"
    PENALIZE = "PENALIZE"
    BLOCK = "BLOCK"


class RuleCondition(BaseModel):
    """One comparison, optionally with and/or sub-conditions."""
    field: str
    operator: Operator
    value: Any = None
    and_: Optional[list[RuleCondition]] = Field(None, alias="and")
    or_: Optional[list[RuleCondition]] = Field(None, alias="or")

    model_config = {"populate_by_name": True}


class RuleAction(BaseModel):
    type: ActionType
    target_credential_id: Optional[str] = None
    target_property: Optional[str] = Field(
        None,
        description="Credential attribute the action is gated on (EXCLUDE/BOOST/PENALIZE)",
    )
    target_property_value: Any = Field(
        None,
        description="Equality value, or a {gt|lt|gte|lte: n} filter",
    )
    boost_amount: Optional[float] = None
    penalty_amount: Optional[float] = None
    reason: str = ""


class Rule(BaseModel):
    id: str
    label: str
    type: RuleType
    priority: int = 100
    enabled: bool = True
    expiry: Optional[int] = Field(None, description="Epoch ms after which the rule no longer applies")
    condition: RuleCondition
    action: RuleAction
    compiled_dsl: Optional[str] = None


class PolicyVersion(BaseModel):
    version: str
    effective_date: int = Field(description="Epoch ms")
    signature_hash: str
    rules: list[Rule]
    description: str = ""
    is_cached: bool = False
