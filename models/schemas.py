"""
Core data models for the feed relay.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class FilterType(str, Enum):
    USER = "user"
    MENTION = "mention"
    KEYWORD = "keyword"


class CircuitStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


# ──────────────────────────────────────────────────────────────
#  Upstream — items fetched from the feed source
# ──────────────────────────────────────────────────────────────

class FeedItem(BaseModel):
    """A single item fetched from the upstream feed."""
    id: str
    text: Optional[str] = None                # None → needs hydration
    author: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    url: str = ""
    mentions: list[str] = []
    media: list[str] = []
    like_count: int = 0
    repost_count: int = 0
    raw: dict[str, Any] = {}

    @property
    def is_complete(self) -> bool:
        return self.text is not None and bool(self.author)

    def age_minutes(self, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return (now - created).total_seconds() / 60.0


class FetchResult(BaseModel):
    items: list[FeedItem] = []
    cursor: Optional[str] = None


class TopicFilter(BaseModel):
    type: FilterType
    value: str


# ──────────────────────────────────────────────────────────────
#  Downstream — rendered payloads and queued messages
# ──────────────────────────────────────────────────────────────

class RenderedMessage(BaseModel):
    text: str
    options: dict[str, Any] = {}


class QueuedMessage(BaseModel):
    """An outbound message waiting in the delivery queue."""
    id: str = Field(default_factory=lambda: f"msg_{uuid.uuid4().hex[:12]}")
    destination: str
    payload: str
    priority: int = 1
    retry_count: int = 0
    first_attempt_at: datetime = Field(default_factory=utcnow)
    item_id: str = ""                         # upstream item, for mark-seen
    scope: str = ""
    options: dict[str, Any] = {}

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        return (self.item_id or self.id, self.scope or "", self.destination)


class SendResult(BaseModel):
    success: bool
    error: Optional[str] = None
    error_kind: Optional[str] = None          # "throttled" | "auth" | "other"
    retry_after: Optional[float] = None       # seconds
    message_id: Optional[str] = None


class DeadLetter(BaseModel):
    message: QueuedMessage
    reason: str
    dead_lettered_at: datetime = Field(default_factory=utcnow)
