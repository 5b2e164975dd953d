"""
Guarded upstream access.

Every upstream call goes through the same path:

    rotator.current() → breaker.execute(fetch, "upstream-fetch")
        success    → rotator.mark_success()
        throttled  → rotator.mark_error()  (cooldown + rotation)
        auth       → rotator.mark_error() + rotate, logged upstream_auth_failed
        systemic   → rotator.mark_error(), rotate per `rotate_on`
        circuit    → nothing recorded; the credential was never used

The error is always re-raised so the caller can decide what the failure
means for its own loop.
"""
from __future__ import annotations

import structlog
from typing import Any, Awaitable, Callable, Optional, TypeVar

from backend.connector import FeedSource
from core.circuit_breaker import CircuitBreaker
from core.credentials import CredentialRotator
from core.errors import AuthFailedError, CircuitOpenError, is_throttle, normalize_error
from models.schemas import FeedItem, FetchResult

logger = structlog.get_logger()

UPSTREAM_CATEGORY = "upstream-fetch"

T = TypeVar("T")


class GuardedSource:
    def __init__(
        self,
        source: FeedSource,
        rotator: CredentialRotator,
        breaker: CircuitBreaker,
        rotate_on: str = "error",
        category: str = UPSTREAM_CATEGORY,
    ):
        if rotate_on not in ("error", "unhealthy"):
            raise ValueError(f"rotate_on must be 'error' or 'unhealthy', got {rotate_on!r}")
        self.source = source
        self.rotator = rotator
        self.breaker = breaker
        self.rotate_on = rotate_on
        self.category = category

    async def fetch(self, query: str, cursor: Optional[str] = None, limit: int = 100) -> FetchResult:
        return await self._call(lambda secret: self.source.fetch(query, secret, cursor=cursor, limit=limit),
                                op="fetch", query=query)

    async def fetch_item(self, item_id: str) -> Optional[FeedItem]:
        return await self._call(lambda secret: self.source.fetch_item(item_id, secret),
                                op="fetch_item", item_id=item_id)

    async def _call(self, call: Callable[[str], Awaitable[T]], **log_context: Any) -> T:
        cred = self.rotator.current()
        try:
            result = await self.breaker.execute(lambda: call(cred.secret), self.category)
        except CircuitOpenError:
            raise
        except Exception as e:
            error = normalize_error(e, "upstream")
            self._on_error(error, **log_context)
            if error is e:
                raise
            raise error from e

        self.rotator.mark_success()
        return result

    def _on_error(self, error: Exception, **log_context: Any) -> None:
        cred = self.rotator.current()
        self.rotator.mark_error(error)
        if is_throttle(error):
            return

        if isinstance(error, AuthFailedError):
            logger.error("upstream_auth_failed", credential=cred.label,
                         pool_size=self.rotator.size, **log_context)
            self.rotator.rotate()
            return

        logger.warning("upstream_call_failed", credential=cred.label,
                       error=str(error), **log_context)
        if self.rotate_on == "error" or self.rotator.is_unhealthy(cred):
            self.rotator.rotate()
