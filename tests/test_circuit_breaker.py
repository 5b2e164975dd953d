"""Tests for the per-category CircuitBreaker."""
import pytest
from unittest.mock import AsyncMock

from core.circuit_breaker import CircuitBreaker, CircuitState
from core.errors import CircuitOpenError, SystemicError, ThrottledError
from models.schemas import CircuitStatus

CAT = "upstream-fetch"


async def fail_times(breaker, n, error=None):
    for _ in range(n):
        op = AsyncMock(side_effect=error or SystemicError("503", "upstream"))
        with pytest.raises(type(error) if error else SystemicError):
            await breaker.execute(op, CAT)


class TestCircuitBreaker:
    def test_starts_closed(self, clock):
        cb = CircuitBreaker(clock=clock)
        assert cb.state(CAT) == CircuitStatus.CLOSED
        assert not cb.is_open(CAT)
        assert cb.failure_count(CAT) == 0

    def test_threshold_validated(self):
        with pytest.raises(ValueError):
            CircuitBreaker(threshold=0)

    @pytest.mark.asyncio
    async def test_success_passes_result_through(self, clock):
        cb = CircuitBreaker(clock=clock)
        assert await cb.execute(AsyncMock(return_value=42), CAT) == 42

    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_rejects_without_calling(self, clock):
        cb = CircuitBreaker(threshold=5, reset_timeout=30, clock=clock)
        await fail_times(cb, 4)
        assert cb.state(CAT) == CircuitStatus.CLOSED
        await fail_times(cb, 1)
        assert cb.is_open(CAT)

        op = AsyncMock(return_value="never")
        with pytest.raises(CircuitOpenError) as exc_info:
            await cb.execute(op, CAT)
        op.assert_not_called()
        assert exc_info.value.category == CAT
        assert cb.stats[CAT]["rejections"] == 1

    @pytest.mark.asyncio
    async def test_throttles_never_counted(self, clock):
        cb = CircuitBreaker(threshold=2, clock=clock)
        await fail_times(cb, 10, ThrottledError("429", "upstream", retry_after=5))
        assert cb.failure_count(CAT) == 0
        assert cb.state(CAT) == CircuitStatus.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_trial_success_closes(self, clock):
        cb = CircuitBreaker(threshold=5, reset_timeout=30, test_interval=5, clock=clock)
        await fail_times(cb, 5)
        clock.advance(31)
        assert cb.state(CAT) == CircuitStatus.HALF_OPEN
        assert not cb.is_open(CAT)

        op = AsyncMock(return_value="ok")
        assert await cb.execute(op, CAT) == "ok"
        op.assert_awaited_once()
        assert cb.failure_count(CAT) == 0
        assert cb.state(CAT) == CircuitStatus.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_allows_one_trial_per_interval(self, clock):
        cb = CircuitBreaker(threshold=2, reset_timeout=30, test_interval=5, clock=clock)
        await fail_times(cb, 2)
        clock.advance(31)

        slow = AsyncMock(side_effect=ThrottledError("429"))
        with pytest.raises(ThrottledError):
            await cb.execute(slow, CAT)
        # Trial consumed; throttle neither closed nor re-opened the breaker.
        assert cb.state(CAT) == CircuitStatus.HALF_OPEN
        assert cb.is_open(CAT)

        op = AsyncMock()
        with pytest.raises(CircuitOpenError):
            await cb.execute(op, CAT)
        op.assert_not_called()

        clock.advance(5)
        await cb.execute(op, CAT)
        op.assert_awaited_once()
        assert cb.state(CAT) == CircuitStatus.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, clock):
        cb = CircuitBreaker(threshold=2, reset_timeout=30, clock=clock)
        await fail_times(cb, 2)
        clock.advance(31)
        await fail_times(cb, 1)
        assert cb.state(CAT) == CircuitStatus.OPEN
        assert cb.failure_count(CAT) == 3

    @pytest.mark.asyncio
    async def test_categories_are_independent(self, clock):
        cb = CircuitBreaker(threshold=1, clock=clock)
        await fail_times(cb, 1)
        assert cb.is_open(CAT)
        assert not cb.is_open("downstream-send")
        assert await cb.execute(AsyncMock(return_value=1), "downstream-send") == 1

    @pytest.mark.asyncio
    async def test_state_change_hook_fires_on_transitions(self, clock):
        transitions = []

        async def hook(category, old, new, state):
            transitions.append((category, old, new, state.failure_count))

        cb = CircuitBreaker(threshold=2, reset_timeout=30, on_state_change=hook, clock=clock)
        await fail_times(cb, 2)
        clock.advance(31)
        await cb.execute(AsyncMock(), CAT)

        assert transitions == [
            (CAT, CircuitStatus.CLOSED, CircuitStatus.OPEN, 2),
            (CAT, CircuitStatus.OPEN, CircuitStatus.HALF_OPEN, 2),
            (CAT, CircuitStatus.HALF_OPEN, CircuitStatus.CLOSED, 0),
        ]

    @pytest.mark.asyncio
    async def test_force_reset(self, clock):
        transitions = []
        cb = CircuitBreaker(threshold=1, clock=clock,
                            on_state_change=lambda c, old, new, st: transitions.append((c, old, new, st.failure_count)))
        await fail_times(cb, 1)
        await cb.force_reset()
        assert not cb.is_open(CAT)
        assert cb.failure_count(CAT) == 0
        assert transitions[-1] == (CAT, CircuitStatus.OPEN, CircuitStatus.CLOSED, 0)

    @pytest.mark.asyncio
    async def test_force_reset_from_half_open_and_closed(self, clock):
        transitions = []
        cb = CircuitBreaker(threshold=1, reset_timeout=30, clock=clock,
                            on_state_change=lambda c, old, new, st: transitions.append((c, old, new)))
        await fail_times(cb, 1)
        clock.advance(31)
        await cb.force_reset(CAT)
        assert transitions[-1] == (CAT, CircuitStatus.HALF_OPEN, CircuitStatus.CLOSED)

        count = len(transitions)
        await cb.force_reset(CAT)
        assert len(transitions) == count

    @pytest.mark.asyncio
    async def test_snapshot_and_restore(self, clock):
        cb = CircuitBreaker(threshold=2, reset_timeout=30, clock=clock)
        await fail_times(cb, 2)
        snap = cb.snapshot(CAT)

        fresh = CircuitBreaker(threshold=2, reset_timeout=30, clock=clock)
        fresh.restore(CAT, CircuitState.from_dict(snap.to_dict()))
        assert fresh.is_open(CAT)
        assert fresh.failure_count(CAT) == 2
