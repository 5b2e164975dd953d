"""
Circuit Breaker — fail fast when a call category is systemically broken.

One breaker instance tracks any number of categories ("upstream-fetch",
"downstream-send", …). Each category owns a CircuitState record:

  closed    (failure_count < threshold)
  open      (threshold reached and now - last_failure_at < reset_timeout)
  half_open (threshold reached, reset_timeout elapsed): one trial call per
            test_interval, every other call is rejected like open

Throttle signals are rethrown untouched and never counted.
"""
from __future__ import annotations

import inspect
import time
import structlog
from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable, Optional, TypeVar

from core.errors import CircuitOpenError, is_throttle
from models.schemas import CircuitStatus

logger = structlog.get_logger()

T = TypeVar("T")

StateChangeCallback = Callable[[str, CircuitStatus, CircuitStatus, "CircuitState"], Any]


@dataclass
class CircuitState:
    failure_count: int = 0
    last_failure_at: Optional[float] = None
    last_test_at: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CircuitState:
        return cls(
            failure_count=int(data.get("failure_count", 0)),
            last_failure_at=data.get("last_failure_at"),
            last_test_at=data.get("last_test_at"),
        )


class CircuitBreaker:
    """
    Per-category circuit breaker.

    Usage:
        breaker = CircuitBreaker(threshold=5, reset_timeout=30, test_interval=5)
        result = await breaker.execute(lambda: source.fetch(q, cred), "upstream-fetch")

    `on_state_change(category, old, new, state)` fires on every transition and
    may be sync or async; it is the hook used for persistence.

    Timestamps come from `clock`, so snapshots are only meaningful within
    one clock domain. Pass `clock=time.time` when states are persisted across
    restarts.
    """

    def __init__(
        self,
        threshold: int = 5,
        reset_timeout: float = 30.0,
        test_interval: float = 5.0,
        on_state_change: Optional[StateChangeCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self.test_interval = test_interval
        self.on_state_change = on_state_change
        self._clock = clock
        self._states: dict[str, CircuitState] = {}
        self._last_status: dict[str, CircuitStatus] = {}
        self._rejections: dict[str, int] = {}

    # ── State derivation ──────────────────────────────────────

    def _record(self, category: str) -> CircuitState:
        if category not in self._states:
            self._states[category] = CircuitState()
            self._last_status[category] = CircuitStatus.CLOSED
        return self._states[category]

    def state(self, category: str) -> CircuitStatus:
        st = self._states.get(category)
        if st is None or st.failure_count < self.threshold:
            return CircuitStatus.CLOSED
        if st.last_failure_at is not None and self._clock() - st.last_failure_at < self.reset_timeout:
            return CircuitStatus.OPEN
        return CircuitStatus.HALF_OPEN

    def _trial_available(self, st: CircuitState) -> bool:
        return st.last_test_at is None or self._clock() - st.last_test_at >= self.test_interval

    def is_open(self, category: str) -> bool:
        """True when a call in this category would be rejected right now."""
        status = self.state(category)
        if status == CircuitStatus.CLOSED:
            return False
        if status == CircuitStatus.OPEN:
            return True
        return not self._trial_available(self._states[category])

    def failure_count(self, category: str) -> int:
        st = self._states.get(category)
        return st.failure_count if st else 0

    # ── Execution ─────────────────────────────────────────────

    async def execute(self, op: Callable[[], Awaitable[T]], category: str) -> T:
        st = self._record(category)
        await self._sync_status(category)

        status = self.state(category)
        if status == CircuitStatus.OPEN or (
            status == CircuitStatus.HALF_OPEN and not self._trial_available(st)
        ):
            self._rejections[category] = self._rejections.get(category, 0) + 1
            logger.debug("circuit_rejected", category=category, state=status.value,
                         failures=st.failure_count)
            raise CircuitOpenError(category)

        if status == CircuitStatus.HALF_OPEN:
            st.last_test_at = self._clock()
            logger.info("circuit_trial_call", category=category)

        try:
            result = await op()
        except Exception as e:
            await self.record_failure(category, e)
            raise

        await self.record_success(category)
        return result

    async def record_success(self, category: str) -> None:
        st = self._record(category)
        st.failure_count = 0
        st.last_failure_at = None
        await self._sync_status(category)

    async def record_failure(self, category: str, error: BaseException) -> None:
        if is_throttle(error):
            logger.debug("circuit_throttle_ignored", category=category, error=str(error))
            return
        st = self._record(category)
        st.failure_count += 1
        st.last_failure_at = self._clock()
        await self._sync_status(category)

    async def _sync_status(self, category: str) -> None:
        """Detect a transition (including time-driven ones) and fire the hook."""
        new = self.state(category)
        old = self._last_status.get(category, CircuitStatus.CLOSED)
        if new == old:
            return
        self._last_status[category] = new
        st = self._states[category]

        if new == CircuitStatus.OPEN:
            logger.warning("circuit_opened", category=category, failures=st.failure_count,
                           reset_timeout_s=self.reset_timeout)
        elif new == CircuitStatus.HALF_OPEN:
            logger.info("circuit_half_open", category=category)
        else:
            logger.info("circuit_closed", category=category)

        if self.on_state_change:
            outcome = self.on_state_change(category, old, new, st)
            if inspect.isawaitable(outcome):
                await outcome

    # ── Operator / persistence ────────────────────────────────

    async def force_reset(self, category: Optional[str] = None) -> None:
        """Close the category (or every category); the hook sees the transition."""
        categories = [category] if category else list(self._states)
        for name in categories:
            self._record(name)
            self._last_status[name] = self.state(name)
            self._states[name] = CircuitState()
            logger.warning("circuit_force_reset", category=name)
            await self._sync_status(name)

    def snapshot(self, category: str) -> CircuitState:
        st = self._record(category)
        return CircuitState(st.failure_count, st.last_failure_at, st.last_test_at)

    def restore(self, category: str, state: CircuitState) -> None:
        self._states[category] = CircuitState(state.failure_count, state.last_failure_at, state.last_test_at)
        self._last_status[category] = self.state(category)
        logger.debug("circuit_restored", category=category, failures=state.failure_count)

    @property
    def categories(self) -> list[str]:
        return list(self._states)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            name: {
                "state": self.state(name).value,
                "failure_count": st.failure_count,
                "rejections": self._rejections.get(name, 0),
            }
            for name, st in self._states.items()
        }
