"""
STOP Routing Engine — FastAPI Application Entry Point

POST /v1/stop/route         → deterministic routing decision + audit record
POST /v1/stop/diff          → why two runs picked different routes
GET  /v1/stop/health        → health check
/v1/admin/policy/*          → policy registry admin (versions, pinning, rule CRUD)
GET  /metrics               → Prometheus
GET  /docs                  → OpenAPI / Swagger UI
"""
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from stop_engine.api.policy_endpoint import router as policy_router
from stop_engine.api.routing_endpoint import router as routing_router
from stop_engine.core.config import Settings, get_settings
from stop_engine.policy.registry import get_policy_registry
from stop_engine.services.event_publisher import stop_producer


def configure_logging(settings: Settings) -> None:
    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.app_env == "development"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(settings.log_level),
    )


settings = get_settings()
configure_logging(settings)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    registry = get_policy_registry()
    logger.info(
        "stop_engine_starting",
        engine_version=settings.engine_version,
        policy_version=registry.current_version,
        auth_enabled=settings.auth_enabled,
        kafka_enabled=settings.kafka_enabled,
    )
    try:
        yield
    finally:
        await stop_producer()
        logger.info("stop_engine_stopped")


app = FastAPI(
    title="STOP Routing Engine",
    description="Deterministic wallet payment routing with replayable audit records",
    version=settings.engine_version,
    lifespan=lifespan,
)

# wallet clients + rule authoring UI
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
)

app.mount("/metrics", make_asgi_app())

app.include_router(routing_router)
app.include_router(policy_router)


@app.get("/", include_in_schema=False)
async def index():
    return {
        "service": settings.app_name,
        "engine_version": settings.engine_version,
        "policy_version": get_policy_registry().current_version,
        "route": "POST /v1/stop/route",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "stop_engine.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
