"""
Feed Source — upstream adapter for the credential-gated feed API.

    fetch(query, credential, cursor=None, limit=100) -> FetchResult
    fetch_item(item_id, credential) -> FeedItem | None      (hydration)

Raw failures are normalized here, before they reach the core:
429 → ThrottledError, 401/403 → AuthFailedError, everything else →
SystemicError. Transport errors are retried a few times with tenacity
first; HTTP status errors are never retried at this layer because the
rotator and breaker must see them.
"""
from __future__ import annotations

import abc
import structlog
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import UpstreamConfig
from core.errors import SystemicError, classify_status, parse_retry_after
from models.schemas import FeedItem, FetchResult

logger = structlog.get_logger()


class FeedSource(abc.ABC):
    """Abstract base for upstream feed sources."""

    name: str = "upstream"

    @abc.abstractmethod
    async def fetch(
        self,
        query: str,
        credential: str,
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> FetchResult:
        ...

    async def fetch_item(self, item_id: str, credential: str) -> Optional[FeedItem]:
        """Fetch the full record for one item. Sources without lookup return None."""
        return None

    async def close(self) -> None:
        pass


def _first(raw: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in raw and raw[key] not in (None, ""):
            return raw[key]
    return default


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            parsed = parsedate_to_datetime(value)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def parse_item(raw: dict[str, Any]) -> FeedItem:
    """
    Convert a raw upstream record to a FeedItem.
    Accepts the common field spellings (snake_case, camelCase, nested author).
    """
    author = _first(raw, "author", "username", "user_name")
    if author is None:
        nested = raw.get("tweetBy") or raw.get("user") or {}
        author = _first(nested, "userName", "username", "screen_name", default="")
    if isinstance(author, dict):
        author = _first(author, "userName", "username", "screen_name", default="")

    item_id = _first(raw, "id", "id_str", "item_id")
    if item_id is None:
        raise KeyError("id")

    media = raw.get("media") or []
    return FeedItem(
        id=str(item_id),
        text=_first(raw, "text", "full_text", "fullText"),
        author=str(author or ""),
        created_at=_parse_datetime(_first(raw, "created_at", "createdAt")),
        url=str(_first(raw, "url", default="")),
        mentions=[m.lstrip("@") for m in (raw.get("mentions") or raw.get("mentionedUsers") or [])
                  if isinstance(m, str)],
        media=[m if isinstance(m, str) else str(_first(m, "url", default="")) for m in media],
        like_count=int(_first(raw, "like_count", "likeCount", default=0)),
        repost_count=int(_first(raw, "repost_count", "retweetCount", "retweet_count", default=0)),
        raw=raw,
    )


class HttpFeedSource(FeedSource):
    """
    REST feed source.
    The credential travels in `auth_header`; "Authorization" gets a Bearer prefix.
    """

    name = "http"

    def __init__(self, config: UpstreamConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(base_url=self.config.base_url, timeout=self.config.timeout_s)
        return self.client

    def _auth_headers(self, credential: str) -> dict[str, str]:
        header = self.config.auth_header
        if header.lower() == "authorization":
            return {header: f"Bearer {credential}"}
        return {header: credential}

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        return await client.request(method, url, **kwargs)

    async def _request(self, method: str, url: str, credential: str, **kwargs) -> Any:
        try:
            response = await self._send(method, url, headers=self._auth_headers(credential), **kwargs)
        except httpx.TransportError as e:
            raise SystemicError(f"upstream transport error: {type(e).__name__}", "upstream") from e

        if response.status_code >= 400:
            retry_after = parse_retry_after(response.headers.get("retry-after"))
            raise classify_status(response.status_code, source="upstream", retry_after=retry_after)

        try:
            return response.json()
        except ValueError as e:
            raise SystemicError("upstream returned invalid JSON", "upstream") from e

    async def fetch(
        self,
        query: str,
        credential: str,
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> FetchResult:
        params: dict[str, Any] = {"q": query, "count": limit}
        if cursor:
            params["cursor"] = cursor
        data = await self._request("GET", self.config.search_path, credential, params=params)

        records = data if isinstance(data, list) else data.get("items", data.get("data", []))
        items: list[FeedItem] = []
        for raw in records:
            try:
                items.append(parse_item(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("upstream_item_unparseable", error=str(e), raw_id=raw.get("id"))
        next_cursor = None if isinstance(data, list) else _first(data, "cursor", "next", "next_cursor")
        return FetchResult(items=items, cursor=next_cursor)

    async def fetch_item(self, item_id: str, credential: str) -> Optional[FeedItem]:
        if not self.config.item_path:
            return None
        url = self.config.item_path.replace("{item_id}", item_id)
        data = await self._request("GET", url, credential)
        return parse_item(data) if data else None

    async def close(self):
        if self.client:
            await self.client.aclose()


class MockFeedSource(FeedSource):
    """
    In-memory feed for development and testing.

    `items` maps a query to the records it returns; `errors` is a list of
    exceptions raised (in order) before normal results resume.
    """

    name = "mock"

    def __init__(
        self,
        items: Optional[dict[str, list[FeedItem]]] = None,
        errors: Optional[list[Exception]] = None,
        lookup: Optional[dict[str, FeedItem]] = None,
    ):
        self.items = items or {}
        self.errors = list(errors or [])
        self.lookup = lookup or {}
        self.calls: list[dict[str, Any]] = []

    async def fetch(self, query, credential, cursor=None, limit=100) -> FetchResult:
        self.calls.append({"query": query, "credential": credential, "cursor": cursor})
        if self.errors:
            raise self.errors.pop(0)
        found = self.items.get(query, [])[:limit]
        return FetchResult(items=found, cursor=found[0].id if found else cursor)

    async def fetch_item(self, item_id: str, credential: str) -> Optional[FeedItem]:
        return self.lookup.get(item_id)


def create_feed_source(config: UpstreamConfig) -> FeedSource:
    """Factory function to create the configured upstream source."""
    if config.base_url:
        return HttpFeedSource(config)
    logger.warning("using_mock_feed_source", reason="no upstream base_url configured")
    return MockFeedSource()
