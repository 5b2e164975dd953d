"""
Error taxonomy shared by every relay component.

Collaborators (upstream feed source, downstream sender) normalize their raw
failures into one of three classes before anything reaches the core:

  ThrottledError   — callee asked us to slow down (HTTP 429); expected
  AuthFailedError  — credential/channel rejected; rotation or retry won't fix it
  SystemicError    — anything else; counts toward breakers and credential health

The core never inspects error message text.
"""
from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base exception for all relay operations."""

    def __init__(self, message: str, source: str = "", retryable: bool = False):
        self.source = source
        self.retryable = retryable
        super().__init__(message)


class ThrottledError(RelayError):
    def __init__(self, message: str = "", source: str = "", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message or f"Rate limit exceeded for {source or 'callee'}", source, retryable=True)


class AuthFailedError(RelayError):
    def __init__(self, message: str = "", source: str = ""):
        super().__init__(message or f"Authentication rejected by {source or 'callee'}", source, retryable=False)


class SystemicError(RelayError):
    def __init__(self, message: str, source: str = "", retryable: bool = True):
        super().__init__(message, source, retryable=retryable)


class CircuitOpenError(RelayError):
    def __init__(self, category: str):
        self.category = category
        super().__init__(f"Circuit breaker open for {category}", category, retryable=True)


class NoCredentialsError(RelayError):
    def __init__(self, message: str = "No upstream credentials configured"):
        super().__init__(message, "credentials", retryable=False)


class StageTimeoutError(RelayError):
    def __init__(self, stage: str, timeout: float):
        self.stage = stage
        self.timeout = timeout
        super().__init__(f"Stage {stage} timed out after {timeout}s", stage, retryable=True)


def is_throttle(exc: BaseException) -> bool:
    return isinstance(exc, ThrottledError)


def classify_status(
    status: int,
    message: str = "",
    source: str = "",
    retry_after: Optional[float] = None,
) -> RelayError:
    """Map an HTTP status code onto the taxonomy."""
    if status == 429:
        return ThrottledError(message or f"{source}: 429 Too Many Requests", source, retry_after)
    if status in (401, 403):
        return AuthFailedError(message or f"{source}: {status} unauthorized", source)
    return SystemicError(message or f"{source}: HTTP {status}", source, retryable=status >= 500)


def normalize_error(exc: BaseException, source: str = "") -> RelayError:
    """Pass taxonomy errors through; wrap anything else as systemic."""
    if isinstance(exc, RelayError):
        return exc
    wrapped = SystemicError(f"{type(exc).__name__}: {exc}", source)
    wrapped.__cause__ = exc
    return wrapped


def parse_retry_after(value) -> Optional[float]:
    """Parse a Retry-After header / field (seconds) into a float, or None."""
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds > 0 else None


def error_kind(exc: BaseException) -> str:
    """Short wire tag for an error: "throttled", "auth" or "other"."""
    if isinstance(exc, ThrottledError):
        return "throttled"
    if isinstance(exc, AuthFailedError):
        return "auth"
    return "other"
