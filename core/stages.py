"""
Concrete relay stages and the pipeline that runs them.

    fetch   NoRetry           validate required fields, hydrate incomplete items
    dedup   NoRetry           skip items already delivered to this scope
    age     NoRetry           skip items older than the age window
    filter  NoRetry           skip items matching none of the topic's filters
    render  RetryWithBackoff  item → message text
    send    RetryWithBackoff  enqueue into the delivery queue with a priority

Skips are control flow, not errors: they end the run with success=True.
"""
from __future__ import annotations

import abc
import structlog
from datetime import datetime
from typing import Callable, Mapping, Optional

from backend.gateway import GuardedSource
from config.settings import PipelineConfig
from core.filters import first_match
from core.pipeline import NoRetry, RetryWithBackoff, StageContext, StageEngine, StageResult
from database.seen_store import SeenStore
from job_queue.delivery_queue import DeliveryQueue
from models.schemas import FeedItem, QueuedMessage, RenderedMessage, TopicFilter, utcnow

logger = structlog.get_logger()

STAGE_ORDER = ("fetch", "dedup", "age", "filter", "render", "send")

HIGH_LIKES = 1000
HIGH_REPOSTS = 500
FRESH_MINUTES = 30


# ──────────────────────────────────────────────────────────────
#  Rendering collaborator
# ──────────────────────────────────────────────────────────────

class Renderer(abc.ABC):
    @abc.abstractmethod
    async def render(self, item: FeedItem, scope: str) -> RenderedMessage:
        ...


class PlainTextRenderer(Renderer):
    """Author line, body, link. No markup."""

    def __init__(self, max_length: int = 4096, disable_preview: bool = False):
        self.max_length = max_length
        self.disable_preview = disable_preview

    async def render(self, item: FeedItem, scope: str) -> RenderedMessage:
        lines = []
        if item.author:
            lines.append(f"@{item.author.lstrip('@')}")
        lines.append(item.text or "")
        if item.url:
            lines.append(item.url)
        text = "\n\n".join(line for line in lines if line)
        if len(text) > self.max_length:
            text = text[: self.max_length - 1] + "…"
        options = {"disable_web_page_preview": True} if self.disable_preview else {}
        return RenderedMessage(text=text, options=options)


def compute_priority(item: FeedItem, now: Optional[datetime] = None) -> int:
    """1 (normal) to 4: +1 high engagement, +1 fresh, +1 has media."""
    priority = 1
    if item.like_count > HIGH_LIKES or item.repost_count > HIGH_REPOSTS:
        priority += 1
    if item.age_minutes(now) < FRESH_MINUTES:
        priority += 1
    if item.media:
        priority += 1
    return priority


# ──────────────────────────────────────────────────────────────
#  Stages
# ──────────────────────────────────────────────────────────────

class RelayStages:
    """
    Holds the collaborators the stages need; each stage is a bound method
    usable as a StageEngine executor.
    """

    def __init__(
        self,
        seen_store: SeenStore,
        queue: DeliveryQueue,
        *,
        upstream: Optional[GuardedSource] = None,
        renderer: Optional[Renderer] = None,
        topic_filters: Optional[Mapping[str, list[TopicFilter]]] = None,
        destinations: Optional[Mapping[str, str]] = None,
        max_age_minutes: float = 60.0,
        now: Callable[[], datetime] = utcnow,
    ):
        self.seen_store = seen_store
        self.queue = queue
        self.upstream = upstream
        self.renderer = renderer or PlainTextRenderer()
        self.topic_filters = topic_filters if topic_filters is not None else {}
        self.destinations = destinations if destinations is not None else {}
        self.max_age_minutes = max_age_minutes
        self._now = now

    async def fetch(self, ctx: StageContext) -> StageResult:
        item = ctx.item
        if not item.id:
            return StageResult.fail("item has no id")

        hydrated = False
        if not item.is_complete and self.upstream is not None:
            full = await self.upstream.fetch_item(item.id)
            if full is not None:
                ctx.item = item = full
                hydrated = True

        if item.text is None:
            return StageResult.skip("incomplete", hydrated=hydrated)
        return StageResult.ok(hydrated=hydrated, author=item.author)

    async def dedup(self, ctx: StageContext) -> StageResult:
        if await self.seen_store.has_seen(ctx.item_id, ctx.scope):
            return StageResult.skip("duplicate")
        return StageResult.ok()

    async def age(self, ctx: StageContext) -> StageResult:
        age = round(ctx.item.age_minutes(self._now()), 1)
        if age > self.max_age_minutes:
            return StageResult.skip("out_of_window", age_minutes=age, max_age_minutes=self.max_age_minutes)
        return StageResult.ok(age_minutes=age)

    async def filter(self, ctx: StageContext) -> StageResult:
        filters = self.topic_filters.get(ctx.scope, [])
        if not filters:
            return StageResult.ok(matched=None)
        hit = first_match(ctx.item, filters)
        if hit is None:
            return StageResult.skip("filter_mismatch", filters=len(filters))
        return StageResult.ok(matched=f"{hit.type.value}:{hit.value}")

    async def render(self, ctx: StageContext) -> StageResult:
        rendered = await self.renderer.render(ctx.item, ctx.scope)
        if not rendered.text.strip():
            return StageResult.fail("rendered message is empty")
        return StageResult.ok(payload=rendered.text, options=rendered.options, length=len(rendered.text))

    async def send(self, ctx: StageContext) -> StageResult:
        destination = ctx.destination or self.destinations.get(ctx.scope, "")
        if not destination:
            return StageResult.fail(f"no destination for scope {ctx.scope}")

        render = ctx.metadata.get("render") or {}
        payload = render.get("payload")
        if payload is None:
            return StageResult.fail("nothing rendered")

        priority = compute_priority(ctx.item, self._now())
        message_id = self.queue.enqueue(QueuedMessage(
            destination=destination,
            payload=payload,
            priority=priority,
            item_id=ctx.item_id,
            scope=ctx.scope,
            options=render.get("options") or {},
        ))
        return StageResult.ok(message_id=message_id, priority=priority, destination=destination)


def build_pipeline(
    stages: RelayStages,
    config: Optional[PipelineConfig] = None,
    **engine_kwargs,
) -> StageEngine:
    """Register the relay stages in order with their declared policies."""
    config = config or PipelineConfig()
    engine = StageEngine(backoff_base=config.backoff_base_s, **engine_kwargs)

    engine.register_stage("fetch", stages.fetch, NoRetry())
    engine.register_stage("dedup", stages.dedup, NoRetry())
    engine.register_stage("age", stages.age, NoRetry())
    engine.register_stage("filter", stages.filter, NoRetry())
    for name in ("render", "send"):
        attempts, timeout = config.policy_args(name)
        engine.register_stage(name, getattr(stages, name), RetryWithBackoff(attempts, timeout))

    logger.debug("pipeline_built", stages=engine.stage_names)
    return engine
