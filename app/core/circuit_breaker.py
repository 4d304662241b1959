"""
Circuit Breaker Pattern Implementation

Guards FSM API calls so a failing upstream is not hammered by every queued
event. An open breaker raises CircuitBreakerOpenError, which the retry
processor treats like any other transient failure.
"""
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar, ParamSpec
from dataclasses import dataclass

from app.core.config import settings
from app.core.logging import get_logger
from app.core.exceptions import CircuitBreakerOpenError, FSMNotFoundError, FSMUserError

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Answers that prove the service is up even though the call "failed"
_NON_TRIPPING_ERRORS = (FSMNotFoundError, FSMUserError)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5      # consecutive failures before opening
    success_threshold: int = 2      # half-open successes before closing
    timeout_seconds: float = 30.0   # open period before a probe is allowed
    half_open_max_calls: int = 3


@dataclass
class _BreakerState:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float = 0.0
    opened_at: float | None = None
    half_open_calls: int = 0


class CircuitBreaker:
    """
    Circuit breaker for one upstream service.

    Instances are shared per service name through get_instance(). State is
    guarded by a threading.Lock because Celery tasks run their own event
    loops in the same process as the API.
    """

    _instances: dict[str, "CircuitBreaker"] = {}
    _instances_lock = threading.Lock()

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = _BreakerState()
        self._lock = threading.Lock()

    @classmethod
    def get_instance(
        cls,
        service_name: str,
        config: CircuitBreakerConfig | None = None
    ) -> "CircuitBreaker":
        if service_name not in cls._instances:
            with cls._instances_lock:
                if service_name not in cls._instances:
                    cls._instances[service_name] = cls(service_name, config)
        return cls._instances[service_name]

    @classmethod
    def reset_all(cls) -> None:
        """Drop all circuit breakers (for tests)"""
        with cls._instances_lock:
            cls._instances.clear()

    @classmethod
    def all_statuses(cls) -> list[dict[str, Any]]:
        """Status of every known breaker, for the operator API"""
        with cls._instances_lock:
            breakers = sorted(cls._instances.values(), key=lambda cb: cb.service_name)
        return [cb.status() for cb in breakers]

    @property
    def state(self) -> CircuitState:
        return self._state.state

    def status(self) -> dict[str, Any]:
        opened_at = self._state.opened_at
        return {
            "service": self.service_name,
            "state": self._state.state.value,
            "failure_count": self._state.failure_count,
            "opened_at": (
                datetime.fromtimestamp(opened_at, tz=timezone.utc).isoformat().replace("+00:00", "Z")
                if opened_at is not None else None
            ),
            "retry_after_seconds": round(self.get_retry_after(), 2),
        }

    def _transition_to(self, new_state: CircuitState) -> None:
        """Caller holds the lock"""
        old_state = self._state.state
        self._state.state = new_state

        if new_state == CircuitState.OPEN:
            self._state.opened_at = self._state.last_failure_time
        elif new_state == CircuitState.HALF_OPEN:
            self._state.half_open_calls = 0
            self._state.success_count = 0
        else:
            self._state.failure_count = 0
            self._state.success_count = 0
            self._state.opened_at = None

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"Circuit breaker '{self.service_name}' {old_state.value} -> {new_state.value}",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
                "failure_count": self._state.failure_count,
            }
        )

    def record_success(self) -> None:
        with self._lock:
            if self._state.state == CircuitState.HALF_OPEN:
                self._state.success_count += 1
                if self._state.success_count >= self.config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)
            elif self._state.state == CircuitState.CLOSED:
                self._state.failure_count = 0

    def record_failure(self, error: Exception) -> None:
        with self._lock:
            self._state.failure_count += 1
            self._state.last_failure_time = time.time()

            if self._state.state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
            elif (
                self._state.state == CircuitState.CLOSED
                and self._state.failure_count >= self.config.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)
            else:
                logger.debug(
                    f"Circuit breaker '{self.service_name}' recorded failure",
                    extra_data={
                        "service": self.service_name,
                        "failure_count": self._state.failure_count,
                        "threshold": self.config.failure_threshold,
                        "error": str(error),
                    }
                )

    def allow_request(self) -> bool:
        with self._lock:
            if self._state.state == CircuitState.CLOSED:
                return True

            if self._state.state == CircuitState.OPEN:
                if time.time() - self._state.last_failure_time < self.config.timeout_seconds:
                    return False
                self._transition_to(CircuitState.HALF_OPEN)

            if self._state.half_open_calls < self.config.half_open_max_calls:
                self._state.half_open_calls += 1
                return True
            return False

    def get_retry_after(self) -> float:
        """Seconds until the breaker lets a probe through"""
        if self._state.state != CircuitState.OPEN:
            return 0.0
        remaining = self.config.timeout_seconds - (time.time() - self._state.last_failure_time)
        return max(0.0, remaining)

    async def execute(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs
    ) -> T:
        """
        Await ``func`` under breaker protection.

        FSMNotFoundError and FSMUserError count as successes: the upstream
        answered. Anything else counts against the breaker and is re-raised.

        Raises:
            CircuitBreakerOpenError: If the circuit is open
        """
        if not self.allow_request():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            result = await func(*args, **kwargs)
        except _NON_TRIPPING_ERRORS:
            self.record_success()
            raise
        except Exception as e:
            self.record_failure(e)
            raise

        self.record_success()
        return result


def get_fsm_circuit_breaker() -> CircuitBreaker:
    """Circuit breaker shared by all FSM API calls"""
    return CircuitBreaker.get_instance(
        "fsm",
        CircuitBreakerConfig(
            failure_threshold=settings.FSM_CIRCUIT_FAILURE_THRESHOLD,
            timeout_seconds=settings.FSM_CIRCUIT_RESET_SECONDS,
        )
    )
