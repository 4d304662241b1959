"""
FastAPI Middleware

- Correlation ID on every request and response
- Request logging (health probes only at debug level)
- Per-IP sliding-window rate limit on the webhook receiver
- Exception handlers rendering the {"error": {code, message, details}} envelope
"""
import time
from collections import defaultdict, deque
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import (
    get_logger,
    set_correlation_id,
    get_correlation_id
)
from app.core.exceptions import AppException, ErrorCode, ExternalServiceException

logger = get_logger(__name__)

WEBHOOK_PATH_MARKER = "/webhooks"
_PROBE_PATHS = frozenset({"/health", "/health/ready"})


def _error_response(status_code: int, body: dict, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=body,
        headers={"X-Correlation-ID": get_correlation_id(), **(headers or {})},
    )


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Adopts X-Correlation-ID from the caller or generates one"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        path = request.url.path
        fields = {"method": request.method, "path": path}

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {path}",
                extra_data={**fields, "duration_ms": round((time.perf_counter() - started) * 1000, 1), "error": str(e)},
                exc_info=True
            )
            raise

        fields.update(
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
            client_host=request.client.host if request.client else None,
        )
        if path in _PROBE_PATHS and response.status_code < 400:
            logger.debug(f"{request.method} {path} {response.status_code}", extra_data=fields)
        elif response.status_code >= 400:
            logger.warning(f"{request.method} {path} {response.status_code}", extra_data=fields)
        else:
            logger.info(f"{request.method} {path} {response.status_code}", extra_data=fields)
        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window rate limit per client IP on webhook paths.

    An IP that already made max_requests within window_seconds gets 429 with
    Retry-After. The FSM redelivers unacknowledged events, so a rejected
    delivery is not lost. Sits inside CorrelationIdMiddleware so rejections
    still carry a correlation ID.
    """

    def __init__(
        self,
        app: FastAPI,
        *,
        max_requests: int = 300,
        window_seconds: int = 60,
    ) -> None:
        super().__init__(app)
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._requests: dict[str, deque[float]] = defaultdict(deque)

    def _cleanup_window(self, ip: str, now: float) -> None:
        cutoff = now - self._window_seconds
        timestamps = self._requests[ip]
        while timestamps and timestamps[0] < cutoff:
            timestamps.popleft()
        if not timestamps:
            del self._requests[ip]

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if WEBHOOK_PATH_MARKER not in path:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.time()
        self._cleanup_window(client_ip, now)

        if len(self._requests.get(client_ip, ())) >= self._max_requests:
            logger.warning(
                "Webhook rate limit exceeded",
                extra_data={
                    "client_ip": client_ip,
                    "path": path,
                    "limit": self._max_requests,
                    "window_seconds": self._window_seconds,
                },
            )
            return _error_response(
                429,
                AppException(
                    "Too many webhook deliveries, retry later",
                    ErrorCode.RATE_LIMITED,
                    429,
                    {"retry_after_seconds": self._window_seconds},
                ).to_dict(),
                headers={"Retry-After": str(self._window_seconds)},
            )

        self._requests[client_ip].append(now)
        return await call_next(request)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Render an AppException; upstream outages are logged as errors"""
    fields = {
        "error_code": exc.error_code.value,
        "message": exc.message,
        "details": exc.details,
        "path": request.url.path,
    }
    if isinstance(exc, ExternalServiceException):
        logger.error(f"Upstream failure on {request.url.path}: {exc.error_code.value}", extra_data=fields)
    else:
        logger.warning(f"Application exception: {exc.error_code.value}", extra_data=fields)

    return _error_response(exc.status_code, exc.to_dict())


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body/query validation failures in the common error envelope"""
    errors = jsonable_encoder(exc.errors())
    logger.info(
        "Request validation failed",
        extra_data={"path": request.url.path, "errors": errors},
    )
    return _error_response(
        422,
        AppException(
            "Request validation failed",
            ErrorCode.VALIDATION_ERROR,
            422,
            {"errors": errors},
        ).to_dict(),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unexpected exceptions: full detail in the log, none in the response"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": request.url.path,
        },
        exc_info=True
    )
    return _error_response(500, AppException("An unexpected error occurred").to_dict())


def setup_middleware(app: FastAPI) -> None:
    from app.core.config import settings

    # Last added is outermost: CorrelationId -> RequestLogging -> RateLimit -> app
    app.add_middleware(
        WebhookRateLimitMiddleware,
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
