"""
Credential Rotator — keeps exactly one upstream credential "current".

Selection steers away from credentials that are cooling down after a
throttle, have failed several times in a row, or have accumulated too many
errors inside the health window. A background task periodically clears the
health of credentials whose last error is older than that window.
"""
from __future__ import annotations

import asyncio
import hashlib
import re
import time
import structlog
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from core.errors import NoCredentialsError, is_throttle

logger = structlog.get_logger()

_AUTH_TOKEN_RE = re.compile(r"auth_token=([^;]+)")
_TWID_RE = re.compile(r"twid=([^;]+)")


def credential_signature(secret: str) -> str:
    """
    Identity of a credential for deduplication.

    Cookie-style keys carrying both auth_token and twid are identified by
    that pair, so the same session pasted twice with different cookie order
    or extra cookies collapses into one entry. Anything else is identified
    by its full value.
    """
    token = _AUTH_TOKEN_RE.search(secret)
    twid = _TWID_RE.search(secret)
    if token and twid:
        return f"{token.group(1).strip()}_{twid.group(1).strip()}"
    return secret


@dataclass
class CredentialHealth:
    error_count: int = 0
    consecutive_failures: int = 0
    last_error_at: Optional[float] = None
    last_success_at: Optional[float] = None
    throttled_until: Optional[float] = None


@dataclass
class Credential:
    secret: str = field(repr=False)
    index: int
    signature: str = field(repr=False)
    health: CredentialHealth = field(default_factory=CredentialHealth)

    @property
    def label(self) -> str:
        """Loggable identity — never the secret itself."""
        digest = hashlib.sha256(self.signature.encode()).hexdigest()[:8]
        return f"#{self.index}:{digest}"


class CredentialRotator:
    """
    Owns the credential pool and per-credential health.

    Usage:
        rotator = CredentialRotator(["key-a", "key-b"], cooldown=1200, stagger=60)
        cred = rotator.current()
        try:
            await source.fetch(query, cred.secret)
            rotator.mark_success()
        except RelayError as e:
            rotator.mark_error(e)
    """

    def __init__(
        self,
        secrets: Iterable[str],
        cooldown: float = 1200.0,
        stagger: float = 60.0,
        max_consecutive_failures: int = 3,
        error_threshold: int = 5,
        health_reset_interval: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
        signature: Callable[[str], str] = credential_signature,
    ):
        unique: dict[str, str] = {}
        for secret in secrets:
            if not secret:
                continue
            unique.setdefault(signature(secret), secret)

        if not unique:
            raise NoCredentialsError()

        self._credentials = [
            Credential(secret=secret, index=i, signature=sig)
            for i, (sig, secret) in enumerate(unique.items())
        ]
        self._current = 0
        self.cooldown = cooldown
        self.stagger = stagger
        self.max_consecutive_failures = max_consecutive_failures
        self.error_threshold = error_threshold
        self.health_reset_interval = health_reset_interval
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._running = False

        logger.info("credentials_initialized",
                    total=len(self._credentials),
                    labels=[c.label for c in self._credentials])

    # ── Selection ─────────────────────────────────────────────

    @property
    def size(self) -> int:
        return len(self._credentials)

    @property
    def credentials(self) -> list[Credential]:
        return list(self._credentials)

    def current(self) -> Credential:
        return self._credentials[self._current]

    def is_unhealthy(self, credential: Optional[Credential] = None) -> bool:
        cred = credential or self.current()
        h = cred.health
        now = self._clock()
        if h.throttled_until is not None and h.throttled_until > now:
            return True
        if h.consecutive_failures >= self.max_consecutive_failures:
            return True
        if (
            h.error_count >= self.error_threshold
            and h.last_error_at is not None
            and now - h.last_error_at < self.health_reset_interval
        ):
            return True
        return False

    def rotate(self) -> Credential:
        """Switch to the healthiest credential; keep the current one if none qualify."""
        if len(self._credentials) <= 1:
            return self.current()

        healthy = [c for c in self._credentials if not self.is_unhealthy(c)]
        if not healthy:
            logger.warning("credentials_exhausted",
                           total=len(self._credentials),
                           current=self.current().label)
            return self.current()

        # Lowest error count first, then most recent success; sort is stable
        # so remaining ties keep pool order.
        best = sorted(
            healthy,
            key=lambda c: (
                c.health.error_count,
                -(c.health.last_success_at if c.health.last_success_at is not None else float("-inf")),
            ),
        )[0]

        if best.index != self._current:
            previous = self.current()
            self._current = best.index
            logger.info("credential_rotated", previous=previous.label, current=best.label,
                        healthy=len(healthy), total=len(self._credentials))
        return best

    # ── Outcome reporting ─────────────────────────────────────

    def mark_error(self, error: BaseException) -> Credential:
        """
        Record a failed call on the current credential.

        Throttle signals put the credential into a staggered cooldown and
        always rotate. Other errors only update counters; whether to move
        on is the caller's decision.
        """
        cred = self.current()
        h = cred.health
        now = self._clock()
        h.error_count += 1
        h.consecutive_failures += 1
        h.last_error_at = now

        if is_throttle(error):
            cooldown = self.cooldown + cred.index * self.stagger
            h.throttled_until = now + cooldown
            logger.warning("credential_throttled", credential=cred.label, cooldown_s=cooldown)
            return self.rotate()

        logger.info("credential_error", credential=cred.label,
                    error_count=h.error_count,
                    consecutive_failures=h.consecutive_failures,
                    error=type(error).__name__)
        return cred

    def mark_success(self) -> None:
        h = self.current().health
        h.consecutive_failures = 0
        h.last_success_at = self._clock()

    # ── Health reset ──────────────────────────────────────────

    def reset_stale_health(self) -> int:
        """Clear health for credentials whose last error left the window."""
        now = self._clock()
        reset = 0
        for cred in self._credentials:
            h = cred.health
            if h.last_error_at is None:
                continue
            if now - h.last_error_at >= self.health_reset_interval:
                cred.health = CredentialHealth(last_success_at=h.last_success_at)
                reset += 1
                logger.debug("credential_health_reset", credential=cred.label)
        return reset

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._running = True
        self._task = asyncio.create_task(self._health_loop(), name="credential_health_reset")

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _health_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.health_reset_interval)
            count = self.reset_stale_health()
            if count:
                logger.info("credential_health_reset", credentials=count)

    def snapshot(self) -> list[dict[str, Any]]:
        now = self._clock()
        return [
            {
                "credential": c.label,
                "current": c.index == self._current,
                "healthy": not self.is_unhealthy(c),
                "error_count": c.health.error_count,
                "consecutive_failures": c.health.consecutive_failures,
                "throttled_for_s": round(max(0.0, (c.health.throttled_until or now) - now), 1),
            }
            for c in self._credentials
        ]
