"""
Topic filter matching.

A topic's filters are OR-combined: an item passes when any user, mention or
keyword filter matches. A topic with no filters accepts everything.
"""
from __future__ import annotations

from typing import Optional

from models.schemas import FeedItem, FilterType, TopicFilter


def _normalize_handle(value: str) -> str:
    return value.strip().lstrip("@").lower()


def match_filter(item: FeedItem, f: TopicFilter) -> bool:
    if f.type == FilterType.USER:
        return _normalize_handle(item.author) == _normalize_handle(f.value)
    if f.type == FilterType.MENTION:
        wanted = _normalize_handle(f.value)
        if any(_normalize_handle(m) == wanted for m in item.mentions):
            return True
        return f"@{wanted}" in (item.text or "").lower()
    if f.type == FilterType.KEYWORD:
        return f.value.strip().lower() in (item.text or "").lower()
    return False


def first_match(item: FeedItem, filters: list[TopicFilter]) -> Optional[TopicFilter]:
    return next((f for f in filters if match_filter(item, f)), None)


def matches(item: FeedItem, filters: list[TopicFilter]) -> bool:
    return not filters or first_match(item, filters) is not None


def build_query(filters: list[TopicFilter], base_query: str = "") -> str:
    """Compose the upstream search query for a topic from its filters."""
    parts: list[str] = []
    for f in filters:
        if f.type == FilterType.USER:
            parts.append(f"from:{_normalize_handle(f.value)}")
        elif f.type == FilterType.MENTION:
            parts.append(f"@{_normalize_handle(f.value)}")
        else:
            value = f.value.strip()
            parts.append(f'"{value}"' if " " in value else value)
    query = " OR ".join(parts)
    if base_query and query:
        return f"({base_query}) ({query})"
    return base_query or query
