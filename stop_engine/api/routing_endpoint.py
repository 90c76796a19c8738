"""
POST /v1/stop/route

Called by the wallet at checkout.
Synchronous request → 13-stage pipeline → audit record + trace.
Publishes the audit record to Kafka (if enabled).
"""
from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from stop_engine.core.config import Settings, get_settings
from stop_engine.core.exceptions import PipelineBusyError, PolicyVersionNotFoundError
from stop_engine.core.prng import MAX_SEED
from stop_engine.pipeline.orchestrator import StopEngine
from stop_engine.policy.registry import PolicyRegistry, get_policy_registry
from stop_engine.schemas.decision import AuditRecord, DiffReport, SensitivityResult, TraceData
from stop_engine.schemas.transaction import TransactionContext, UserProfile
from stop_engine.services.event_publisher import publish_audit_event
from stop_engine.services.run_diff import compute_diff

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/stop", tags=["routing"])


# ── Pydantic Schemas ──

class RouteRequest(BaseModel):
    context: TransactionContext
    user: UserProfile
    seed: Optional[int] = Field(None, ge=0, le=MAX_SEED, description="Replay seed; random when omitted")


class RouteResponse(BaseModel):
    audit_record: AuditRecord
    trace: TraceData
    sensitivity: list[SensitivityResult]


class DiffRequest(BaseModel):
    previous: AuditRecord
    current: AuditRecord


# ── Endpoints ──

@router.post(
    "/route",
    response_model=RouteResponse,
    summary="Select the funding credential for a wallet transaction",
    description="Deterministic for a given seed, context, user and active policy version.",
)
async def route_transaction(
    request: RouteRequest,
    registry: PolicyRegistry = Depends(get_policy_registry),
) -> RouteResponse:
    engine = StopEngine(registry, seed=request.seed)

    logger.info(
        "routing_started",
        user_id=request.user.id,
        merchant=request.context.merchant,
        mcc=request.context.mcc,
        seed=engine.seed,
    )

    try:
        result = await run_in_threadpool(engine.run_pipeline, request.context, request.user)
    except PipelineBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PolicyVersionNotFoundError as e:
        logger.error("policy_unavailable", error=str(e))
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error("routing_failed", user_id=request.user.id, error=str(e))
        raise HTTPException(status_code=500, detail=f"Routing engine error: {e}")

    # ── Publish to Kafka (fire-and-forget) ──
    await publish_audit_event(result.audit_record)

    return RouteResponse(
        audit_record=result.audit_record,
        trace=result.trace,
        sensitivity=result.sensitivity,
    )


@router.post(
    "/diff",
    response_model=Optional[DiffReport],
    summary="Explain why two runs selected different routes",
)
async def diff_runs(request: DiffRequest) -> Optional[DiffReport]:
    return compute_diff(request.previous, request.current)


@router.get("/health", tags=["health"])
async def health(settings: Settings = Depends(get_settings)):
    return {"status": "ok", "service": settings.app_name, "engine_version": settings.engine_version}
