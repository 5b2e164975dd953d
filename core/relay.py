"""
Feed Relay — owns and wires every component.

    FeedPoller ─→ StageEngine(fetch → dedup → age → filter → render → send)
                                                                 │
                                             DeliveryQueue ←─────┘
                                                   │
                                            DownstreamSender

Shared state (credential pool, circuit states) lives in explicit objects
constructed once here and passed to whoever needs them. Circuit states
are restored from the configured store on start and saved on every
transition.

Run:
    python -m core.relay --config config/settings.yaml
"""
from __future__ import annotations

import argparse
import asyncio
import signal
import time
import structlog
from typing import Any, Optional

from backend.connector import FeedSource, create_feed_source
from backend.gateway import UPSTREAM_CATEGORY, GuardedSource
from backend.poller import FeedPoller, Topic
from channels import create_sender
from channels.base import DownstreamSender
from config.settings import Settings, get_settings, load_settings
from core.circuit_breaker import CircuitBreaker, CircuitState
from core.credentials import CredentialRotator
from core.stages import RelayStages, Renderer, build_pipeline
from database.circuit_store import CircuitStateStore, InMemoryCircuitStateStore, create_circuit_store
from database.seen_store import SeenStore, create_seen_store
from job_queue.delivery_queue import DOWNSTREAM_CATEGORY, DeliveryQueue
from models.schemas import CircuitStatus, TopicFilter

logger = structlog.get_logger()


class FeedRelay:
    def __init__(
        self,
        poller: FeedPoller,
        queue: DeliveryQueue,
        rotator: CredentialRotator,
        breaker: CircuitBreaker,
        seen_store: SeenStore,
        sender: DownstreamSender,
        source: FeedSource,
        circuit_store: Optional[CircuitStateStore] = None,
    ):
        self.poller = poller
        self.queue = queue
        self.rotator = rotator
        self.breaker = breaker
        self.seen_store = seen_store
        self.sender = sender
        self.source = source
        self.circuit_store = circuit_store or InMemoryCircuitStateStore()
        self.breaker.on_state_change = self._persist_circuit
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        source: Optional[FeedSource] = None,
        sender: Optional[DownstreamSender] = None,
        seen_store: Optional[SeenStore] = None,
        renderer: Optional[Renderer] = None,
    ) -> FeedRelay:
        """Build the full component graph from settings; collaborators may be injected."""
        creds = settings.credentials
        rotator = CredentialRotator(
            creds.keys,
            cooldown=creds.cooldown_s,
            stagger=creds.stagger_s,
            max_consecutive_failures=creds.max_consecutive_failures,
            error_threshold=creds.error_threshold,
            health_reset_interval=creds.health_reset_interval_s,
        )
        # Wall clock so persisted circuit timestamps stay valid after a restart.
        breaker = CircuitBreaker(
            threshold=settings.circuit.threshold,
            reset_timeout=settings.circuit.reset_timeout_s,
            test_interval=settings.circuit.test_interval_s,
            clock=time.time,
        )
        storage = settings.storage
        seen_store = seen_store or create_seen_store(storage.seen_backend, storage.data_dir, storage.redis_url)
        circuit_store = create_circuit_store(storage.circuit_backend, storage.data_dir)
        source = source or create_feed_source(settings.upstream)
        sender = sender or create_sender(settings.downstream)

        q = settings.queue
        queue = DeliveryQueue(
            sender, seen_store, breaker,
            base_delay=q.base_delay_s,
            max_delay=q.max_delay_s,
            max_retries=q.max_retries,
            tick_interval=q.tick_interval_s,
            throttle_decay_after=q.throttle_decay_after_s,
            dead_letter_limit=q.dead_letter_limit,
        )

        topics = [
            Topic(
                scope=scope,
                destination=t.destination,
                query=t.query,
                filters=[TopicFilter(**f) for f in t.filters],
                enabled=t.enabled,
            )
            for scope, t in settings.topics.items()
        ]
        upstream = GuardedSource(source, rotator, breaker, rotate_on=creds.rotate_on)
        stages = RelayStages(
            seen_store, queue,
            upstream=upstream,
            renderer=renderer,
            topic_filters={t.scope: t.filters for t in topics},
            destinations={t.scope: t.destination for t in topics},
            max_age_minutes=settings.poller.max_age_minutes,
        )
        engine = build_pipeline(stages, settings.pipeline)
        poller = FeedPoller(
            upstream, engine, topics,
            interval=settings.poller.interval_s,
            inter_item_delay=settings.poller.inter_item_delay_s,
            page_size=settings.poller.page_size,
        )
        return cls(poller, queue, rotator, breaker, seen_store, sender, source, circuit_store)

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        if self._started:
            return
        await self.restore_circuits()
        await self.rotator.start()
        await self.queue.start()
        await self.poller.start()
        self._started = True
        logger.info("feed_relay_started", credentials=self.rotator.size,
                    topics=len(self.poller.topics), sender=self.sender.name)

    async def stop(self) -> None:
        """Poller first so nothing new is enqueued, then the queue, then the rest."""
        await self.poller.stop()
        await self.queue.stop()
        await self.rotator.stop()
        await self.source.close()
        await self.sender.close()
        await self.seen_store.close()
        self._started = False
        logger.info("feed_relay_stopped", queue_length=len(self.queue))

    async def restore_circuits(self) -> None:
        for category in (UPSTREAM_CATEGORY, DOWNSTREAM_CATEGORY):
            state = await self.circuit_store.load(category)
            if state is not None:
                self.breaker.restore(category, state)
                logger.info("circuit_state_restored", category=category,
                            state=self.breaker.state(category).value,
                            failures=state.failure_count)

    async def _persist_circuit(
        self, category: str, old: CircuitStatus, new: CircuitStatus, state: CircuitState,
    ) -> None:
        try:
            await self.circuit_store.save(category, state)
        except Exception as e:
            logger.error("circuit_state_save_failed", category=category, error=str(e))

    # ── Introspection ─────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        return {
            "running": self._started,
            "queue": self.queue.status(),
            "queue_metrics": self.queue.metrics(),
            "dead_letters": len(self.queue.dead_letters()),
            "circuits": self.breaker.stats,
            "credentials": self.rotator.snapshot(),
            "poller": self.poller.status(),
        }


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

async def run_once(relay: FeedRelay) -> dict[str, int]:
    """One poll cycle, then drain the queue. Clients are closed even when the cycle raises."""
    try:
        await relay.restore_circuits()
        stats = await relay.poller.poll_cycle()
        while len(relay.queue) and not relay.queue.is_paused:
            if await relay.queue.process_next() == "circuit_open":
                break
        logger.info("single_cycle_done", **stats, queue_length=len(relay.queue))
        return stats
    finally:
        await relay.stop()


async def run(settings: Settings, once: bool = False) -> None:
    relay = FeedRelay.from_settings(settings)

    if once:
        await run_once(relay)
        return

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    await relay.start()
    try:
        while not stop_event.is_set() and relay.poller.is_running:
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
    finally:
        await relay.stop()


def main():
    # Load .env before any config is read
    from dotenv import load_dotenv
    load_dotenv()

    parser = argparse.ArgumentParser(description="Feed relay")
    parser.add_argument("--config", default=None, help="Path to settings YAML (default: $RELAY_CONFIG)")
    parser.add_argument("--once", action="store_true", help="Run a single poll cycle and drain the queue")
    args = parser.parse_args()

    settings = load_settings(args.config) if args.config else get_settings()
    asyncio.run(run(settings, once=args.once))


if __name__ == "__main__":
    main()
