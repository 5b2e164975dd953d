"""
Telegram Bot API sender.

Destinations are "chat_id" or "chat_id:thread_id" (forum topics), e.g.
"-1001234567890:42". Every raw outcome is normalized at this boundary:

  200 ok            → SendResult(success=True)
  429               → throttled, retry_after from `parameters.retry_after`
                      or the Retry-After header
  401 / 403         → auth
  anything else     → other

A local token bucket keeps us under the per-chat send rate; when no token
frees up in time the send is reported as throttled, like a remote 429.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx

from channels.base import DownstreamSender, TokenBucketRateLimiter
from core.errors import classify_status, error_kind, parse_retry_after
from models.schemas import SendResult

logger = structlog.get_logger()


def parse_destination(destination: str) -> tuple[str, Optional[int]]:
    chat_id, sep, thread = destination.rpartition(":")
    if not sep:
        return destination, None
    if not thread.isdigit():
        return destination, None
    return chat_id, int(thread)


class TelegramSender(DownstreamSender):
    name = "telegram"

    def __init__(
        self,
        bot_token: str,
        api_base: str = "https://api.telegram.org",
        messages_per_minute: int = 20,
        timeout: float = 30.0,
        acquire_timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._token = bot_token
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._acquire_timeout = acquire_timeout
        self._client = client
        self._limiter = TokenBucketRateLimiter(
            rate=messages_per_minute / 60.0,
            burst=max(1, messages_per_minute),
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self._api_base, timeout=self._timeout)
        return self._client

    async def send(self, destination: str, payload: str, options: Optional[dict[str, Any]] = None) -> SendResult:
        if not await self._limiter.acquire(timeout=self._acquire_timeout):
            wait = max(1.0, self._limiter.retry_after())
            logger.debug("telegram_local_rate_limit", destination=destination, retry_after_s=wait)
            return SendResult(success=False, error="local rate limit reached",
                              error_kind="throttled", retry_after=wait)

        chat_id, thread_id = parse_destination(destination)
        body: dict[str, Any] = {"chat_id": chat_id, "text": payload, **(options or {})}
        if thread_id is not None:
            body["message_thread_id"] = thread_id

        client = await self._get_client()
        try:
            response = await client.post(f"/bot{self._token}/sendMessage", json=body)
        except httpx.HTTPError as e:
            logger.warning("telegram_transport_error", destination=destination, error=type(e).__name__)
            return SendResult(success=False, error=f"transport error: {type(e).__name__}", error_kind="other")

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code == 200 and data.get("ok"):
            message_id = (data.get("result") or {}).get("message_id")
            return SendResult(success=True, message_id=str(message_id) if message_id is not None else None)

        parameters = data.get("parameters") or {}
        retry_after = parse_retry_after(parameters.get("retry_after") or response.headers.get("retry-after"))
        err = classify_status(
            response.status_code,
            data.get("description") or "",
            source="telegram",
            retry_after=retry_after,
        )
        logger.info("telegram_send_rejected", destination=destination,
                    status=response.status_code, kind=error_kind(err))
        return SendResult(success=False, error=str(err), error_kind=error_kind(err), retry_after=retry_after)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
