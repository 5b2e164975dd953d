"""
Feed Poller — periodic fetch of new items for every configured topic.

Runs as a background task owned by the relay.

Flow per cycle, one topic at a time:
    GuardedSource.fetch(topic query, cursor)     (rotator + breaker)
    → each item through the StageEngine, oldest first
    → inter-item pacing delay between items (never parallel fan-out)

One item's failure never aborts the batch. A throttled or failed topic
does not stop the cycle; an open upstream circuit does, since every topic
shares that category. AuthFailed with no fallback credential stops the
poller entirely.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from backend.gateway import GuardedSource
from core.errors import AuthFailedError, CircuitOpenError, RelayError, is_throttle
from core.filters import build_query
from core.pipeline import StageContext, StageEngine
from models.schemas import TopicFilter

logger = structlog.get_logger()


@dataclass
class Topic:
    scope: str
    destination: str
    query: str = ""
    filters: list[TopicFilter] = field(default_factory=list)
    enabled: bool = True

    @property
    def search_query(self) -> str:
        return build_query(self.filters, self.query)


class FeedPoller:
    """
    Polls the upstream feed and pushes items through the pipeline.

    Configure in settings:
        poller:
          interval_s: 60
          inter_item_delay_s: 1.0
          page_size: 100
    """

    def __init__(
        self,
        upstream: GuardedSource,
        engine: StageEngine,
        topics: list[Topic],
        *,
        interval: float = 60.0,
        inter_item_delay: float = 1.0,
        page_size: int = 100,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.upstream = upstream
        self.engine = engine
        self.topics = topics
        self.interval = interval
        self.inter_item_delay = inter_item_delay
        self.page_size = page_size
        self._sleep = sleep
        self._cursors: dict[str, str] = {}
        self._running = False
        self._stopped_fatal = False
        self._stop_requested = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._totals = {"cycles": 0, "fetched": 0, "completed": 0, "skipped": 0, "failed": 0, "errors": 0}

    async def start(self) -> None:
        """Start the polling loop as a background task."""
        if self._task and not self._task.done():
            return
        self._running = True
        self._stopped_fatal = False
        self._stop_requested.clear()
        self._task = asyncio.create_task(self._poll_loop(), name="feed_poller")
        logger.info("feed_poller_started", interval_s=self.interval,
                    topics=[t.scope for t in self.topics if t.enabled])

    async def stop(self) -> None:
        """
        Stop polling; the current item finishes its pipeline run first.

        Pending waits (between cycles or between items) end immediately and
        no further item is started. Nothing in flight is cancelled.
        """
        self._running = False
        self._stop_requested.set()
        task, self._task = self._task, None
        if task and not task.done() and task is not asyncio.current_task():
            await task
        logger.info("feed_poller_stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _pause(self, seconds: float) -> None:
        """Wait `seconds`, returning early once stop() is requested."""
        if self._stop_requested.is_set():
            return
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        stopper = asyncio.ensure_future(self._stop_requested.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (sleeper, stopper):
                if not waiter.done():
                    waiter.cancel()

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_cycle()
            except AuthFailedError as e:
                logger.critical("upstream_auth_fatal", error=str(e),
                                credential=self.upstream.rotator.current().label)
                self._running = False
                self._stopped_fatal = True
                break
            except Exception as e:
                logger.error("poll_cycle_error", error=str(e), exc_info=True)

            await self._pause(self.interval)

    async def poll_cycle(self) -> dict[str, int]:
        """
        One pass over all enabled topics.

        Returns counts: {"topics", "fetched", "completed", "skipped", "failed", "errors"}.
        Raises AuthFailedError when the only credential was rejected.
        """
        stats = {"topics": 0, "fetched": 0, "completed": 0, "skipped": 0, "failed": 0, "errors": 0}

        for topic in self.topics:
            if self._stop_requested.is_set():
                break
            if not topic.enabled:
                continue
            stats["topics"] += 1
            try:
                await self.poll_topic(topic, stats)
            except CircuitOpenError:
                logger.warning("poll_cycle_circuit_open", scope=topic.scope,
                               category=self.upstream.category)
                stats["errors"] += 1
                break
            except AuthFailedError:
                stats["errors"] += 1
                if self.upstream.rotator.size <= 1:
                    self._record(stats)
                    raise
            except RelayError as e:
                stats["errors"] += 1
                level = "info" if is_throttle(e) else "warning"
                getattr(logger, level)("poll_topic_failed", scope=topic.scope, error=str(e))

        self._record(stats)
        logger.info("poll_cycle_complete", **stats)
        return stats

    async def poll_topic(self, topic: Topic, stats: dict[str, int]) -> None:
        result = await self.upstream.fetch(
            topic.search_query,
            cursor=self._cursors.get(topic.scope),
            limit=self.page_size,
        )
        if result.cursor:
            self._cursors[topic.scope] = result.cursor

        items = sorted(result.items, key=lambda i: i.created_at)
        stats["fetched"] += len(items)

        for n, item in enumerate(items):
            if n > 0 and self.inter_item_delay > 0:
                await self._pause(self.inter_item_delay)
            if self._stop_requested.is_set():
                logger.info("poll_topic_interrupted", scope=topic.scope, remaining=len(items) - n)
                break
            try:
                outcome = await self.engine.process(
                    StageContext(item=item, scope=topic.scope, destination=topic.destination)
                )
            except Exception as e:
                logger.error("item_processing_error", item_id=item.id, scope=topic.scope, error=str(e))
                stats["failed"] += 1
                continue

            if not outcome.success:
                stats["failed"] += 1
            elif outcome.skipped:
                stats["skipped"] += 1
            else:
                stats["completed"] += 1

    def _record(self, stats: dict[str, int]) -> None:
        self._totals["cycles"] += 1
        for key in ("fetched", "completed", "skipped", "failed", "errors"):
            self._totals[key] += stats[key]

    def cursor(self, scope: str) -> Optional[str]:
        return self._cursors.get(scope)

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "stopped_fatal": self._stopped_fatal,
            "topics": [t.scope for t in self.topics if t.enabled],
            **self._totals,
        }
