"""
Downstream channel base infrastructure.

Provides:
- DownstreamSender: abstract send(destination, payload, options) -> SendResult
- raise_for_result: turns a failed SendResult into the structured error taxonomy
- TokenBucketRateLimiter: async token bucket with configurable burst
- RecordingSender: in-process sender for development and tests
"""
from __future__ import annotations

import abc
import asyncio
import time
import uuid
import structlog
from typing import Any, Optional

from core.errors import AuthFailedError, SystemicError, ThrottledError
from models.schemas import SendResult

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  SENDER INTERFACE
# ══════════════════════════════════════════════════════════════

class DownstreamSender(abc.ABC):
    """
    Sends one rendered payload to one destination.

    Implementations never raise for expected delivery failures; they return
    SendResult(success=False, error_kind=..., retry_after=...) so the queue
    can classify the outcome without parsing messages.
    """

    name: str = "downstream"

    @abc.abstractmethod
    async def send(self, destination: str, payload: str, options: Optional[dict[str, Any]] = None) -> SendResult:
        ...

    async def close(self) -> None:
        pass


def raise_for_result(result: SendResult, source: str = "downstream") -> None:
    if result.success:
        return
    message = result.error or "send failed"
    if result.error_kind == "throttled" or (result.error_kind is None and result.retry_after):
        raise ThrottledError(message, source, result.retry_after)
    if result.error_kind == "auth":
        raise AuthFailedError(message, source)
    raise SystemicError(message, source)


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Tokens refill at `rate` per second up to `burst` capacity.
    """

    def __init__(self, rate: float = 10.0, burst: int = 10):
        self.rate = rate
        self.burst = burst
        self._tokens: float = float(burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            wait = min(1.0 / max(self.rate, 0.001), remaining)
            await asyncio.sleep(wait)

    def retry_after(self) -> float:
        """Seconds until the next token is available."""
        self._refill()
        if self._tokens >= 1.0:
            return 0.0
        return (1.0 - self._tokens) / max(self.rate, 0.001)

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.burst, self._tokens + elapsed * self.rate)
        self._last_refill = now


# ══════════════════════════════════════════════════════════════
#  RECORDING SENDER
# ══════════════════════════════════════════════════════════════

class RecordingSender(DownstreamSender):
    """
    Keeps every delivered payload in memory.

    `script` queues canned results returned before falling back to success,
    which makes throttle / failure sequences easy to reproduce.
    """

    name = "recording"

    def __init__(self, script: Optional[list[SendResult]] = None):
        self.sent: list[dict[str, Any]] = []
        self.attempts: list[dict[str, Any]] = []
        self._script = list(script or [])

    async def send(self, destination: str, payload: str, options: Optional[dict[str, Any]] = None) -> SendResult:
        record = {"destination": destination, "payload": payload, "options": options or {}}
        self.attempts.append(record)
        if self._script:
            result = self._script.pop(0)
            if not result.success:
                return result
        self.sent.append(record)
        return SendResult(success=True, message_id=uuid.uuid4().hex[:8])
