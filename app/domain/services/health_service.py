"""
Health checks for the service's dependencies (DB, Redis, Celery broker).

Two levels:
- liveness: the process is up (no dependency checks)
- readiness: every external dependency answers
"""
import asyncio
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis
from sqlalchemy import text

from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# Sanitized errors; infrastructure details only go to the log
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_CELERY = "error: celery_unavailable"

# A probe must answer well inside the orchestrator's own timeout
_CHECK_TIMEOUT_SECONDS = 3.0


async def _check_db() -> str:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("DB health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_celery() -> str:
    """Ping the Celery broker; beat tasks re-drive retries and the DLQ"""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Celery broker health check failed", extra_data={"error": str(e)})
        return _ERROR_CELERY


async def _bounded(name: str, check: Callable[[], Awaitable[str]], timeout_error: str) -> str:
    try:
        return await asyncio.wait_for(check(), timeout=_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(f"{name} health check timed out", extra_data={"timeout_seconds": _CHECK_TIMEOUT_SECONDS})
        return timeout_error


async def check_readiness() -> dict[str, Any]:
    """
    Readiness across all dependencies, checked concurrently.

    status is "healthy" when every check is "ok", otherwise "degraded";
    each dependency reports "ok" or a sanitized "error: ..." string.
    """
    probes: dict[str, tuple[Callable[[], Awaitable[str]], str]] = {
        "db": (_check_db, _ERROR_DB),
        "redis": (_check_redis, _ERROR_REDIS),
        "celery": (_check_celery, _ERROR_CELERY),
    }
    results = await asyncio.gather(
        *(_bounded(name, check, timeout_error) for name, (check, timeout_error) in probes.items())
    )
    checks = dict(zip(probes, results))

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {"status": overall_status, **checks}
