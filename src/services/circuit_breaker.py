"""Circuit breakers for calls to external services.

States: CLOSED -> OPEN -> HALF_OPEN -> CLOSED

- CLOSED: every call passes through
- OPEN: calls fail immediately with CircuitOpenError until the reset timeout
  has elapsed since the last failure
- HALF_OPEN: trial calls pass through; two consecutive successes close the
  circuit, reaching the failure threshold again re-opens it

State is process-local. Each external dependency gets its own named instance
from get_breaker().
"""

import time
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from src.config import get_settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RESET_TIMEOUT_MS = 30_000
# Consecutive HALF_OPEN successes needed to close the circuit
HALF_OPEN_SUCCESS_THRESHOLD = 2

LLM_BREAKER = "openai-llm"
PUSH_BREAKER = "push-delivery"
CHAT_BREAKER = "chat-delivery"
ESCALATION_BREAKER = "escalation-delivery"


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitOpenError(Exception):
    """Raised instead of calling the wrapped function while the circuit is open."""

    def __init__(self, name: str, retry_after_ms: int):
        self.name = name
        self.retry_after_ms = retry_after_ms
        super().__init__(
            f"Circuit '{name}' is OPEN. Retry after {max(0, retry_after_ms) // 1000}s"
        )


class CircuitBreaker:
    """Failure-counting circuit breaker around async callables."""

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_timeout_ms: int = DEFAULT_RESET_TIMEOUT_MS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._half_open_successes = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _elapsed_since_failure_ms(self) -> float:
        if self._last_failure_time is None:
            return float("inf")
        return (self._clock() - self._last_failure_time) * 1000

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run fn through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open and the reset timeout has
                not elapsed. fn is not called.
            Exception: Whatever fn raised, after it was counted as a failure.
        """
        if self._state == CircuitState.OPEN:
            elapsed_ms = self._elapsed_since_failure_ms()
            if elapsed_ms >= self.reset_timeout_ms:
                self._state = CircuitState.HALF_OPEN
                self._half_open_successes = 0
                logger.info("circuit_half_open", circuit=self.name)
            else:
                raise CircuitOpenError(
                    self.name, int(self.reset_timeout_ms - elapsed_ms)
                )

        try:
            result = await fn()
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    async def execute_with_fallback(
        self, fn: Callable[[], Awaitable[T]], fallback: T
    ) -> T:
        """Run fn through the breaker, returning fallback instead of raising."""
        try:
            return await self.execute(fn)
        except CircuitOpenError as e:
            logger.warning(
                "circuit_open_fallback",
                circuit=self.name,
                retry_after_ms=e.retry_after_ms,
            )
            return fallback
        except Exception as e:
            logger.warning("circuit_call_failed_fallback", circuit=self.name, error=str(e))
            return fallback

    def _on_success(self) -> None:
        self._failure_count = 0
        if self._state == CircuitState.HALF_OPEN:
            self._half_open_successes += 1
            if self._half_open_successes >= HALF_OPEN_SUCCESS_THRESHOLD:
                self._state = CircuitState.CLOSED
                self._half_open_successes = 0
                logger.info("circuit_closed", circuit=self.name)

    def _on_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()
        self._half_open_successes = 0

        # The failure count is not cleared on entering HALF_OPEN, so a failed
        # first trial re-opens immediately.
        if self._failure_count >= self.failure_threshold:
            if self._state != CircuitState.OPEN:
                logger.error(
                    "circuit_opened",
                    circuit=self.name,
                    failure_count=self._failure_count,
                    reset_timeout_ms=self.reset_timeout_ms,
                )
            self._state = CircuitState.OPEN

    def reset(self) -> None:
        """Force the circuit back to CLOSED (admin endpoint and tests)."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._half_open_successes = 0
        self._last_failure_time = None

    def snapshot(self) -> dict:
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "reset_timeout_ms": self.reset_timeout_ms,
        }


_breakers: dict[str, CircuitBreaker] = {}


def _configured_limits(name: str) -> tuple[int, int]:
    settings = get_settings()
    limits = {
        LLM_BREAKER: (
            settings.llm_breaker_failure_threshold,
            settings.llm_breaker_reset_timeout_ms,
        ),
        PUSH_BREAKER: (
            settings.push_breaker_failure_threshold,
            settings.push_breaker_reset_timeout_ms,
        ),
        CHAT_BREAKER: (
            settings.chat_breaker_failure_threshold,
            settings.chat_breaker_reset_timeout_ms,
        ),
        ESCALATION_BREAKER: (
            settings.escalation_breaker_failure_threshold,
            settings.escalation_breaker_reset_timeout_ms,
        ),
    }
    return limits.get(name, (DEFAULT_FAILURE_THRESHOLD, DEFAULT_RESET_TIMEOUT_MS))


def get_breaker(name: str) -> CircuitBreaker:
    """Get the process-wide breaker for a named dependency, creating it on first use."""
    breaker = _breakers.get(name)
    if breaker is None:
        failure_threshold, reset_timeout_ms = _configured_limits(name)
        breaker = CircuitBreaker(
            name=name,
            failure_threshold=failure_threshold,
            reset_timeout_ms=reset_timeout_ms,
        )
        _breakers[name] = breaker
    return breaker


def list_breakers() -> list[CircuitBreaker]:
    return list(_breakers.values())


def reset_all_breakers() -> None:
    """Drop every registered breaker (used by tests)."""
    _breakers.clear()
