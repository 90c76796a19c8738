"""
Policy Admin API — versions, pinning and rule CRUD on the current version.

Endpoints (all under /v1/admin/policy, policy-admin role required):
  GET    /versions                  → every known version
  GET    /active                    → pinned-or-current snapshot
  POST   /rules                     → add a rule
  PATCH  /rules/{rule_id}           → partial rule update
  DELETE /rules/{rule_id}           → remove a rule
  PUT    /rules/order               → reprioritize
  POST   /rules/validate            → dry-run validation + rendered DSL
  PUT    /pin, DELETE /pin          → pin / unpin a version
  PUT    /versions/{version}/cache  → toggle the cache flag
  POST   /fetch                     → simulated registry fetch latency
  POST   /reset                     → restore the seeded baseline

All changes are audit-logged.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ValidationError

from stop_engine.core.auth import require_policy_admin
from stop_engine.core.exceptions import (
    InvalidRuleError,
    PolicyVersionNotFoundError,
    RuleNotFoundError,
    StopEngineError,
)
from stop_engine.core.metrics import policy_mutations_counter
from stop_engine.core.prng import PRNG, generate_seed
from stop_engine.pipeline.stages import POLICY_LOAD, STAGE_LATENCY_RANGES
from stop_engine.policy.registry import PolicyRegistry, get_policy_registry
from stop_engine.rules.dsl import generate_dsl_snippet, validate_rule
from stop_engine.schemas.policy import PolicyVersion, Rule

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/admin/policy", tags=["policy-admin"])


# ── Pydantic Schemas ──

class ActivePolicyResponse(BaseModel):
    policy: PolicyVersion
    current_version: str
    pinned_version: Optional[str]


class ReorderRequest(BaseModel):
    rule_ids: list[str]


class PinRequest(BaseModel):
    version: Optional[str] = None


class CacheUpdate(BaseModel):
    is_cached: bool


class FetchRequest(BaseModel):
    seed: Optional[int] = None


class FetchResponse(BaseModel):
    version: str
    is_cached: bool
    latency_ms: int
    seed: int


class ValidationResponse(BaseModel):
    valid: bool
    errors: list[str]
    dsl: Optional[str] = None


def _http_error(e: StopEngineError) -> HTTPException:
    if isinstance(e, (PolicyVersionNotFoundError, RuleNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidRuleError):
        return HTTPException(status_code=422, detail={"message": str(e), "errors": e.errors})
    return HTTPException(status_code=500, detail=str(e))


def _audit(operation: str, token_payload: dict, **fields: Any) -> None:
    policy_mutations_counter.labels(operation=operation).inc()
    logger.info("policy_admin_change", operation=operation, changed_by=token_payload.get("sub", "unknown"), **fields)


# ── Reads ──

@router.get("/versions", response_model=list[PolicyVersion])
async def list_versions(
    registry: PolicyRegistry = Depends(get_policy_registry),
    token_payload: dict = Depends(require_policy_admin),
) -> list[PolicyVersion]:
    return registry.get_all_versions()


@router.get("/active", response_model=ActivePolicyResponse)
async def get_active(
    registry: PolicyRegistry = Depends(get_policy_registry),
    token_payload: dict = Depends(require_policy_admin),
) -> ActivePolicyResponse:
    try:
        policy = registry.get_active_policy()
    except StopEngineError as e:
        raise _http_error(e)
    return ActivePolicyResponse(
        policy=policy,
        current_version=registry.current_version,
        pinned_version=registry.pinned_version,
    )


# ── Rule CRUD ──

@router.post("/rules", response_model=PolicyVersion, status_code=201)
async def add_rule(
    rule: Rule,
    registry: PolicyRegistry = Depends(get_policy_registry),
    token_payload: dict = Depends(require_policy_admin),
) -> PolicyVersion:
    try:
        policy = registry.add_rule(rule)
    except StopEngineError as e:
        raise _http_error(e)
    _audit("add_rule", token_payload, rule_id=rule.id, signature=policy.signature_hash)
    return policy


@router.patch("/rules/{rule_id}", response_model=PolicyVersion)
async def update_rule(
    rule_id: str,
    updates: dict[str, Any],
    registry: PolicyRegistry = Depends(get_policy_registry),
    token_payload: dict = Depends(require_policy_admin),
) -> PolicyVersion:
    try:
        policy = registry.update_rule(rule_id, updates)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False))
    except StopEngineError as e:
        raise _http_error(e)
    _audit("update_rule", token_payload, rule_id=rule_id, fields=sorted(updates))
    return policy


@router.delete("/rules/{rule_id}", response_model=PolicyVersion)
async def remove_rule(
    rule_id: str,
    registry: PolicyRegistry = Depends(get_policy_registry),
    token_payload: dict = Depends(require_policy_admin),
) -> PolicyVersion:
    try:
        policy = registry.remove_rule(rule_id)
    except StopEngineError as e:
        raise _http_error(e)
    _audit("remove_rule", token_payload, rule_id=rule_id)
    return policy


@router.put("/rules/order", response_model=PolicyVersion)
async def reorder_rules(
    request: ReorderRequest,
    registry: PolicyRegistry = Depends(get_policy_registry),
    token_payload: dict = Depends(require_policy_admin),
) -> PolicyVersion:
    policy = registry.reorder_rules(request.rule_ids)
    _audit("reorder_rules", token_payload, order=request.rule_ids)
    return policy


@router.post("/rules/validate", response_model=ValidationResponse)
async def validate(
    rule: Rule,
    token_payload: dict = Depends(require_policy_admin),
) -> ValidationResponse:
    result = validate_rule(rule)
    return ValidationResponse(
        valid=result.valid,
        errors=result.errors,
        dsl=generate_dsl_snippet(rule) if result.valid else None,
    )


# ── Pinning / cache / fetch ──

@router.put("/pin")
async def pin_version(
    request: PinRequest,
    registry: PolicyRegistry = Depends(get_policy_registry),
    token_payload: dict = Depends(require_policy_admin),
):
    try:
        registry.pin_policy_version(request.version)
    except StopEngineError as e:
        raise _http_error(e)
    _audit("pin", token_payload, version=request.version)
    return {"pinned_version": registry.pinned_version}


@router.delete("/pin")
async def unpin_version(
    registry: PolicyRegistry = Depends(get_policy_registry),
    token_payload: dict = Depends(require_policy_admin),
):
    registry.pin_policy_version(None)
    _audit("unpin", token_payload)
    return {"pinned_version": None}


@router.put("/versions/{version}/cache")
async def set_cache_flag(
    version: str,
    request: CacheUpdate,
    registry: PolicyRegistry = Depends(get_policy_registry),
    token_payload: dict = Depends(require_policy_admin),
):
    try:
        registry.update_policy_cache(version, request.is_cached)
    except StopEngineError as e:
        raise _http_error(e)
    _audit("cache_flag", token_payload, version=version, is_cached=request.is_cached)
    return {"version": version, "is_cached": request.is_cached}


@router.post("/fetch", response_model=FetchResponse)
async def simulate_fetch(
    request: FetchRequest,
    registry: PolicyRegistry = Depends(get_policy_registry),
    token_payload: dict = Depends(require_policy_admin),
) -> FetchResponse:
    seed = request.seed if request.seed is not None else generate_seed()
    try:
        policy = registry.get_active_policy()
    except StopEngineError as e:
        raise _http_error(e)
    latency = registry.simulate_policy_fetch(policy.is_cached, STAGE_LATENCY_RANGES[POLICY_LOAD], PRNG(seed))
    return FetchResponse(version=policy.version, is_cached=policy.is_cached, latency_ms=latency, seed=seed)


@router.post("/reset")
async def reset_registry(
    registry: PolicyRegistry = Depends(get_policy_registry),
    token_payload: dict = Depends(require_policy_admin),
):
    registry.reset()
    _audit("reset", token_payload)
    return {"current_version": registry.current_version, "pinned_version": registry.pinned_version}
