"""
FieldOps Sync - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select
from starlette.responses import JSONResponse

import app.db.models  # noqa: F401  registers every table on Base.metadata
from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import AsyncSessionLocal, engine, Base
from app.db.models.fsm_account import FSMAccount
from app.domain.services.fsm import get_fsm_client
from app.domain.services.fsm.custom_fields import warm_custom_field_registry
from app.workers.retry_processor import get_retry_processor

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {"name": "Webhooks", "description": "Inbound FSM webhooks, acknowledged immediately and processed in the background."},
    {
        "name": "Admin",
        "description": (
            "Operator tooling: inbox and dead-letter queue, quote/job sync records, billing state, "
            "margin and reconciliation alerts, circuit breakers."
        ),
    },
    {"name": "Health", "description": "Liveness and readiness probes."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Keeps billing milestones, margin risk, change-order decisions and payment reconciliation "
        "consistent with the field-service-management system of record."
    ),
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging, webhook rate limit)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Admin-API-Key", "X-Correlation-ID"],
    )

app.include_router(api_router, prefix="/api")


async def _warm_custom_fields() -> None:
    async with AsyncSessionLocal() as db:
        result = await db.execute(select(FSMAccount.account_id).where(FSMAccount.access_token.is_not(None)))
        clients = [get_fsm_client(account_id, db) for account_id in result.scalars().all()]
        if clients:
            await warm_custom_field_registry(clients)


@app.on_event("startup")
async def startup() -> None:
    """Create tables, start the event worker and re-hydrate it from pending rows"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    recovered = await get_retry_processor().start()
    logger.info("Event processor started", extra_data={"recovered_events": recovered})

    try:
        await _warm_custom_fields()
    except Exception as e:
        logger.warning("Custom field warm-up failed", extra_data={"error": str(e)})


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    await get_retry_processor().stop()
    from app.core.redis_client import close_redis
    await close_redis()
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness probe",
    description="The process is up. Dependencies are not checked so a DB or Redis outage never triggers a restart.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness probe",
    description="Checks DB, Redis and the Celery broker. 200 when all are ok, 503 with details otherwise.",
    responses={
        200: {
            "description": "All dependencies ok",
            "content": {
                "application/json": {
                    "example": {"status": "healthy", "db": "ok", "redis": "ok", "celery": "ok"}
                }
            },
        },
        503: {
            "description": "At least one dependency unavailable",
            "content": {
                "application/json": {
                    "example": {
                        "status": "degraded",
                        "db": "ok",
                        "redis": "error: redis_unavailable",
                        "celery": "ok",
                    }
                }
            },
        },
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    from app.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
