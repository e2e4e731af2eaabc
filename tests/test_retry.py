"""
Tests for RetryPolicy backoff and the CircuitBreaker state machine.
"""

import pytest

from bulkorder.core.errors import ExternalServiceError
from bulkorder.services.retry import CircuitBreaker, RetryPolicy


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class Flaky:
    """Fails ``failures`` times, then returns "ok"."""

    def __init__(self, failures: int, code: str = "BLK-EXT-001"):
        self.failures = failures
        self.code = code
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise ExternalServiceError(self.code, detail=f"attempt {self.calls}")
        return "ok"


async def _no_sleep(delay: float) -> None:
    _no_sleep.delays.append(delay)


_no_sleep.delays = []


@pytest.fixture(autouse=True)
def _reset_delays():
    _no_sleep.delays.clear()


# ---------------------------------------------------------------------------
# RetryPolicy
# ---------------------------------------------------------------------------

class TestRetryPolicy:
    def test_delay_is_jittered_and_capped(self):
        policy = RetryPolicy(initial_delay_s=1, max_delay_s=4, multiplier=2)
        for attempt, ceiling in [(0, 1), (1, 2), (2, 4), (5, 4)]:
            delay = policy.delay_for(attempt)
            assert ceiling / 2 <= delay <= ceiling

    @pytest.mark.asyncio
    async def test_recovers_from_transient_failure(self):
        call = Flaky(failures=2)
        result = await RetryPolicy(attempts=3).run("check_availability", call, sleep=_no_sleep)
        assert result == "ok"
        assert call.calls == 3
        assert len(_no_sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        call = Flaky(failures=10, code="BLK-EXT-002")
        with pytest.raises(ExternalServiceError) as exc_info:
            await RetryPolicy(attempts=3).run("check_availability", call, sleep=_no_sleep)
        assert exc_info.value.code == "BLK-EXT-002"
        assert call.calls == 3

    @pytest.mark.asyncio
    async def test_open_circuit_is_not_retried(self):
        call = Flaky(failures=10, code="BLK-EXT-003")
        with pytest.raises(ExternalServiceError):
            await RetryPolicy(attempts=3).run("check_availability", call, sleep=_no_sleep)
        assert call.calls == 1
        assert _no_sleep.delays == []

    @pytest.mark.asyncio
    async def test_other_exceptions_propagate_immediately(self):
        async def broken():
            raise KeyError("bug")

        with pytest.raises(KeyError):
            await RetryPolicy(attempts=3).run("check_availability", broken, sleep=_no_sleep)


# ---------------------------------------------------------------------------
# CircuitBreaker
# ---------------------------------------------------------------------------

class TestCircuitBreaker:
    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker("commerce", failure_threshold=2, reset_s=30, clock=clock)

    @pytest.mark.asyncio
    async def test_opens_after_consecutive_failures(self, breaker):
        call = Flaky(failures=10)
        for _ in range(2):
            with pytest.raises(ExternalServiceError):
                await breaker.call(call)
        assert breaker.state == "open"

        with pytest.raises(ExternalServiceError) as exc_info:
            await breaker.call(call)
        assert exc_info.value.code == "BLK-EXT-003"
        assert call.calls == 2

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, breaker):
        call = Flaky(failures=1)
        with pytest.raises(ExternalServiceError):
            await breaker.call(call)
        assert await breaker.call(call) == "ok"
        assert breaker.state == "closed"

    @pytest.mark.asyncio
    async def test_half_open_trial_success_closes(self, breaker, clock):
        call = Flaky(failures=2)
        for _ in range(2):
            with pytest.raises(ExternalServiceError):
                await breaker.call(call)
        clock.now += 30
        assert breaker.state == "half_open"
        assert await breaker.call(call) == "ok"
        assert breaker.state == "closed"

    @pytest.mark.asyncio
    async def test_half_open_trial_failure_reopens(self, breaker, clock):
        call = Flaky(failures=10)
        for _ in range(2):
            with pytest.raises(ExternalServiceError):
                await breaker.call(call)
        clock.now += 30
        with pytest.raises(ExternalServiceError) as exc_info:
            await breaker.call(call)
        assert exc_info.value.code == "BLK-EXT-001"
        assert breaker.state == "open"
