"""Unit tests for the circuit breaker state machine."""

from unittest.mock import AsyncMock

import pytest

from src.services.circuit_breaker import (
    LLM_BREAKER,
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    get_breaker,
    list_breakers,
)


class FakeClock:
    """Manually advanced monotonic clock, in seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000


async def _fail():
    raise RuntimeError("boom")


async def _ok():
    return "ok"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(name="test", failure_threshold=5, reset_timeout_ms=30000, clock=clock)


async def _trip(breaker, times=5):
    for _ in range(times):
        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)


class TestClosedState:
    @pytest.mark.asyncio
    async def test_passes_results_through(self, breaker):
        assert await breaker.execute(_ok) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_stays_closed_below_threshold(self, breaker):
        await _trip(breaker, times=4)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 4

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, breaker):
        await _trip(breaker, times=4)
        await breaker.execute(_ok)
        assert breaker.failure_count == 0

        await _trip(breaker, times=4)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, breaker):
        await _trip(breaker)
        assert breaker.state == CircuitState.OPEN


class TestOpenState:
    @pytest.mark.asyncio
    async def test_fails_fast_before_timeout(self, breaker, clock):
        await _trip(breaker)
        clock.advance_ms(29999)
        fn = AsyncMock(return_value="ok")

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.execute(fn)

        fn.assert_not_called()
        assert breaker.state == CircuitState.OPEN
        assert exc_info.value.name == "test"
        assert 0 <= exc_info.value.retry_after_ms <= 1

    @pytest.mark.asyncio
    async def test_trial_call_after_timeout(self, breaker, clock):
        await _trip(breaker)
        clock.advance_ms(30001)
        fn = AsyncMock(return_value="ok")

        result = await breaker.execute(fn)

        assert result == "ok"
        fn.assert_awaited_once()
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_exact_timeout_allows_trial(self, breaker, clock):
        await _trip(breaker)
        clock.advance_ms(30000)

        await breaker.execute(_ok)
        assert breaker.state == CircuitState.HALF_OPEN


class TestHalfOpenState:
    @pytest.mark.asyncio
    async def test_two_successes_close(self, breaker, clock):
        await _trip(breaker)
        clock.advance_ms(30001)

        await breaker.execute(_ok)
        assert breaker.state == CircuitState.HALF_OPEN
        await breaker.execute(_ok)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failed_trial_reopens(self, breaker, clock):
        await _trip(breaker)
        clock.advance_ms(30001)

        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.execute(_ok)

    @pytest.mark.asyncio
    async def test_failure_after_one_success_needs_full_threshold(self, breaker, clock):
        await _trip(breaker)
        clock.advance_ms(30001)
        await breaker.execute(_ok)

        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.failure_count == 1


class TestFallback:
    @pytest.mark.asyncio
    async def test_returns_fallback_on_failure(self, breaker):
        assert await breaker.execute_with_fallback(_fail, "fallback") == "fallback"
        assert breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_returns_fallback_when_open(self, breaker):
        await _trip(breaker)
        fn = AsyncMock(return_value="ok")

        assert await breaker.execute_with_fallback(fn, None) is None
        fn.assert_not_called()


class TestRegistry:
    def test_get_breaker_is_cached_per_name(self):
        first = get_breaker(LLM_BREAKER)
        assert get_breaker(LLM_BREAKER) is first
        assert get_breaker("push-delivery") is not first
        assert {b.name for b in list_breakers()} == {LLM_BREAKER, "push-delivery"}

    @pytest.mark.asyncio
    async def test_reset_closes(self, breaker):
        await _trip(breaker)
        breaker.reset()

        snapshot = breaker.snapshot()
        assert snapshot["state"] == "CLOSED"
        assert snapshot["failure_count"] == 0
