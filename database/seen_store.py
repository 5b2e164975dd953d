"""
Seen Store — the narrow dedup interface the relay needs from storage.

    has_seen(item_id, scope) -> bool
    mark_seen(item_id, scope)          idempotent

Implementations:
  - InMemorySeenStore  (dict of sets, single-process, no persistence)
  - FileSeenStore      (JSON file on disk, survives restarts)
  - RedisSeenStore     (one Redis set per scope)
"""
from __future__ import annotations

import json
import structlog
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

logger = structlog.get_logger()


class SeenStore(ABC):
    """Interface that all seen-store backends must implement."""

    @abstractmethod
    async def has_seen(self, item_id: str, scope: str) -> bool:
        ...

    @abstractmethod
    async def mark_seen(self, item_id: str, scope: str) -> None:
        ...

    async def close(self) -> None:
        pass


class InMemorySeenStore(SeenStore):
    def __init__(self):
        self._seen: dict[str, set[str]] = {}

    async def has_seen(self, item_id: str, scope: str) -> bool:
        return item_id in self._seen.get(str(scope), set())

    async def mark_seen(self, item_id: str, scope: str) -> None:
        self._seen.setdefault(str(scope), set()).add(item_id)

    def count(self, scope: Optional[str] = None) -> int:
        if scope is not None:
            return len(self._seen.get(str(scope), set()))
        return sum(len(ids) for ids in self._seen.values())


class FileSeenStore(InMemorySeenStore):
    """
    Extends InMemorySeenStore with JSON file persistence.

    On init: loads {scope: [item_id, ...]} from disk.
    On every new mark: flushes the file. Re-marking a seen item is a no-op.
    """

    def __init__(self, data_dir: str = "./data", filename: str = "seen.json"):
        super().__init__()
        self._path = Path(data_dir) / filename
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._load()
        logger.info("seen_store_initialized", path=str(self._path), items=self.count())

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            with open(self._path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("seen_store_load_error", path=str(self._path), error=str(e))
            return
        self._seen = {str(scope): set(ids) for scope, ids in data.items()}

    def _flush(self) -> None:
        payload: dict[str, Any] = {scope: sorted(ids) for scope, ids in self._seen.items()}
        tmp = self._path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(payload, f)
        tmp.replace(self._path)

    async def mark_seen(self, item_id: str, scope: str) -> None:
        if await self.has_seen(item_id, scope):
            return
        await super().mark_seen(item_id, scope)
        self._flush()


class RedisSeenStore(SeenStore):
    """Seen sets in Redis: key `{prefix}:{scope}` holds item ids."""

    def __init__(self, redis_url: str = "redis://localhost:6379", prefix: str = "relay:seen", client=None):
        self._redis_url = redis_url
        self._prefix = prefix
        self._redis = client

    async def _client(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
            logger.info("seen_store_redis_connected", url=self._redis_url)
        return self._redis

    def _key(self, scope: str) -> str:
        return f"{self._prefix}:{scope}"

    async def has_seen(self, item_id: str, scope: str) -> bool:
        client = await self._client()
        return bool(await client.sismember(self._key(scope), item_id))

    async def mark_seen(self, item_id: str, scope: str) -> None:
        client = await self._client()
        await client.sadd(self._key(scope), item_id)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()


def create_seen_store(backend: str = "memory", data_dir: str = "./data", redis_url: str = "") -> SeenStore:
    """Factory: create the configured seen-store backend."""
    if backend == "file":
        return FileSeenStore(data_dir=data_dir)
    if backend == "redis":
        return RedisSeenStore(redis_url=redis_url or "redis://localhost:6379")
    if backend != "memory":
        logger.warning("unknown_seen_backend", backend=backend, fallback="memory")
    return InMemorySeenStore()
