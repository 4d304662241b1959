"""
Tests for the health endpoints: liveness and readiness.
"""
import asyncio
from contextlib import contextmanager
from unittest.mock import AsyncMock, patch

import httpx
import pytest


@contextmanager
def _checks(db: str = "ok", redis: str = "ok", celery: str = "ok"):
    with patch(
        "app.domain.services.health_service._check_db",
        new_callable=AsyncMock,
        return_value=db,
    ), patch(
        "app.domain.services.health_service._check_redis",
        new_callable=AsyncMock,
        return_value=redis,
    ), patch(
        "app.domain.services.health_service._check_celery",
        new_callable=AsyncMock,
        return_value=celery,
    ):
        yield


# ============================================================================
# Liveness Probe - GET /health
# ============================================================================


class TestLivenessProbe:

    @pytest.mark.unit
    async def test_liveness_returns_healthy(self, test_client: httpx.AsyncClient) -> None:
        """Liveness never checks dependencies"""
        response = await test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


# ============================================================================
# Readiness Probe - GET /health/ready
# ============================================================================


class TestReadinessProbe:

    @pytest.mark.unit
    async def test_readiness_all_healthy(self, test_client: httpx.AsyncClient) -> None:
        with _checks():
            response = await test_client.get("/health/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "db": "ok", "redis": "ok", "celery": "ok"}

    @pytest.mark.unit
    async def test_readiness_db_down(self, test_client: httpx.AsyncClient) -> None:
        with _checks(db="error: db_unavailable"):
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert data["db"] == "error: db_unavailable"
        assert data["redis"] == "ok"

    @pytest.mark.unit
    async def test_readiness_multiple_failures(self, test_client: httpx.AsyncClient) -> None:
        with _checks(db="error: db_unavailable", redis="error: redis_unavailable"):
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert "error" in data["db"]
        assert "error" in data["redis"]
        assert data["celery"] == "ok"

    @pytest.mark.unit
    async def test_readiness_celery_broker_down(self, test_client: httpx.AsyncClient) -> None:
        with _checks(celery="error: celery_unavailable"):
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"

    @pytest.mark.unit
    async def test_hung_dependency_times_out(self, test_client: httpx.AsyncClient) -> None:
        """A check that never answers is reported as unavailable instead of stalling the probe"""
        async def _hang() -> str:
            await asyncio.sleep(60)
            return "ok"

        with _checks(), \
             patch("app.domain.services.health_service._check_redis", _hang), \
             patch("app.domain.services.health_service._CHECK_TIMEOUT_SECONDS", 0.05):
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["redis"] == "error: redis_unavailable"
        assert response.json()["db"] == "ok"


# ============================================================================
# Individual checks
# ============================================================================


class TestHealthCheckFunctions:

    @pytest.mark.unit
    async def test_check_db_success(self) -> None:
        mock_session = AsyncMock()
        mock_session.execute = AsyncMock()
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)

        with patch(
            "app.domain.services.health_service.AsyncSessionLocal",
            return_value=mock_session,
        ):
            from app.domain.services.health_service import _check_db
            result = await _check_db()

        assert result == "ok"

    @pytest.mark.unit
    async def test_check_db_failure_is_sanitized(self) -> None:
        """Connection details stay in the log, not in the response"""
        mock_session = AsyncMock()
        mock_session.execute = AsyncMock(side_effect=ConnectionError("postgres://user:secret@db refused"))
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)

        with patch(
            "app.domain.services.health_service.AsyncSessionLocal",
            return_value=mock_session,
        ):
            from app.domain.services.health_service import _check_db
            result = await _check_db()

        assert result == "error: db_unavailable"

    @pytest.mark.unit
    async def test_check_redis_success(self) -> None:
        mock_redis = AsyncMock()
        mock_redis.ping = AsyncMock(return_value=True)

        with patch(
            "app.domain.services.health_service.get_redis",
            new_callable=AsyncMock,
            return_value=mock_redis,
        ):
            from app.domain.services.health_service import _check_redis
            result = await _check_redis()

        assert result == "ok"

    @pytest.mark.unit
    async def test_check_redis_failure(self) -> None:
        with patch(
            "app.domain.services.health_service.get_redis",
            new_callable=AsyncMock,
            side_effect=ConnectionError("refused"),
        ):
            from app.domain.services.health_service import _check_redis
            result = await _check_redis()

        assert result == "error: redis_unavailable"

    @pytest.mark.unit
    async def test_check_celery_success(self) -> None:
        mock_client = AsyncMock()
        mock_client.ping = AsyncMock(return_value=True)
        mock_client.aclose = AsyncMock()

        with patch(
            "app.domain.services.health_service.aioredis.from_url",
            return_value=mock_client,
        ):
            from app.domain.services.health_service import _check_celery
            result = await _check_celery()

        assert result == "ok"
        mock_client.aclose.assert_awaited_once()

    @pytest.mark.unit
    async def test_check_celery_failure(self) -> None:
        mock_client = AsyncMock()
        mock_client.ping = AsyncMock(side_effect=ConnectionError("refused"))
        mock_client.aclose = AsyncMock()

        with patch(
            "app.domain.services.health_service.aioredis.from_url",
            return_value=mock_client,
        ):
            from app.domain.services.health_service import _check_celery
            result = await _check_celery()

        assert result == "error: celery_unavailable"
        mock_client.aclose.assert_awaited_once()
