"""
Delivery Queue — single adaptive-pacing outbound queue.

A short periodic tick checks whether a send can start; the send itself only
happens after waiting `current_delay`, the pacing interval that adapts to
the downstream channel's throttle feedback:

  throttled with retry-after  → current_delay = max(retry_after, current_delay * 2)
  throttled without           → current_delay = min(current_delay * 2, max_delay)
  success, ≥ decay window
  since the last throttle     → current_delay = max(base_delay, current_delay / 2)

Failure routing:
  retry_count >= max_retries  → dead-letter (removed, logged, kept for inspection)
  throttle                    → demoted to the tail so other messages get a turn
  anything else               → stays at the head, retried next tick

Exactly one send is in flight at any time.
"""
from __future__ import annotations

import asyncio
import inspect
import time
import structlog
from collections import deque
from typing import Any, Awaitable, Callable, Optional

from channels.base import DownstreamSender, raise_for_result
from core.circuit_breaker import CircuitBreaker
from core.errors import AuthFailedError, CircuitOpenError, RelayError, is_throttle, normalize_error
from database.seen_store import SeenStore
from models.schemas import DeadLetter, QueuedMessage, SendResult

logger = structlog.get_logger()

DOWNSTREAM_CATEGORY = "downstream-send"


class DeliveryQueue:
    """
    Usage:
        queue = DeliveryQueue(sender, seen_store, breaker, base_delay=1.0)
        await queue.start()
        msg_id = queue.enqueue(QueuedMessage(destination="-100123:42", payload="hi"))
        ...
        await queue.stop()
    """

    def __init__(
        self,
        sender: DownstreamSender,
        seen_store: Optional[SeenStore] = None,
        breaker: Optional[CircuitBreaker] = None,
        *,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        max_retries: int = 3,
        tick_interval: float = 0.1,
        throttle_decay_after: float = 10.0,
        dead_letter_limit: int = 1000,
        category: str = DOWNSTREAM_CATEGORY,
        on_dead_letter: Optional[Callable[[DeadLetter], Any]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.sender = sender
        self.seen_store = seen_store
        self.breaker = breaker
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_retries = max_retries
        self.tick_interval = tick_interval
        self.throttle_decay_after = throttle_decay_after
        self.category = category
        self.on_dead_letter = on_dead_letter
        self._clock = clock
        self._sleep = sleep

        self._queue: list[QueuedMessage] = []
        self._pending: dict[tuple[str, str, str], str] = {}
        self._dead: deque[DeadLetter] = deque(maxlen=dead_letter_limit)
        self.current_delay = base_delay
        self._paused = False
        self._processing = False
        self._sending = False
        self._throttle_streak = 0
        self._last_throttle_at: Optional[float] = None

        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._counters = {"sent": 0, "failed": 0, "throttled": 0, "dead_lettered": 0}

    # ── Producer side ─────────────────────────────────────────

    def enqueue(self, message: QueuedMessage) -> str:
        """Add a message; re-enqueueing a still-pending item returns the existing id."""
        key = message.dedup_key
        existing = self._pending.get(key)
        if existing is not None:
            logger.debug("message_already_queued", message_id=existing, item_id=message.item_id,
                         destination=message.destination)
            return existing

        self._queue.append(message)
        self._pending[key] = message.id
        logger.info("message_queued", message_id=message.id, item_id=message.item_id,
                    destination=message.destination, priority=message.priority,
                    queue_length=len(self._queue))
        return message.id

    def prioritize_queue(self) -> None:
        """Stable sort by descending priority."""
        self._queue.sort(key=lambda m: -m.priority)
        logger.debug("queue_prioritized", queue_length=len(self._queue))

    # ── Control ───────────────────────────────────────────────

    def pause(self) -> None:
        self._paused = True
        logger.info("delivery_paused", current_delay_s=self.current_delay)

    def resume(self) -> None:
        self._paused = False
        logger.info("delivery_resumed", queue_length=len(self._queue))

    def clear(self) -> int:
        dropped = len(self._queue)
        self._queue.clear()
        self._pending.clear()
        logger.info("queue_cleared", dropped=dropped)
        return dropped

    def clear_rate_limit_state(self) -> None:
        self.current_delay = self.base_delay
        self._throttle_streak = 0
        self._last_throttle_at = None
        logger.info("delivery_rate_limit_state_cleared", queue_length=len(self._queue))

    def remove_failed_messages(self) -> int:
        """Drop every message that has failed at least once."""
        keep = [m for m in self._queue if m.retry_count == 0]
        removed = [m for m in self._queue if m.retry_count > 0]
        self._queue = keep
        for m in removed:
            self._pending.pop(m.dedup_key, None)
        if removed:
            logger.info("failed_messages_removed", removed=len(removed), queue_length=len(keep))
        return len(removed)

    # ── Introspection ─────────────────────────────────────────

    @property
    def is_paused(self) -> bool:
        return self._paused

    def __len__(self) -> int:
        return len(self._queue)

    def peek(self, count: int = 10) -> list[QueuedMessage]:
        return list(self._queue[:count])

    def dead_letters(self) -> list[DeadLetter]:
        return list(self._dead)

    def status(self) -> dict[str, Any]:
        return {
            "queue_length": len(self._queue),
            "is_paused": self._paused,
            "is_processing": self._processing,
            "current_delay": self.current_delay,
        }

    def metrics(self) -> dict[str, Any]:
        total = len(self._queue)
        retried = sum(1 for m in self._queue if m.retry_count > 0)
        attempts = self._counters["sent"] + self._counters["failed"]
        return {
            **self._counters,
            "queue_length": total,
            "pending_retries": retried,
            "average_retry_count": (sum(m.retry_count for m in self._queue) / total) if total else 0.0,
            "success_rate": (self._counters["sent"] / attempts) if attempts else 1.0,
            "current_delay": self.current_delay,
        }

    # ── Drain loop ────────────────────────────────────────────

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._running = True
        self.current_delay = self.base_delay
        self._task = asyncio.create_task(self._drain_loop(), name="delivery_queue")
        logger.info("delivery_queue_started", base_delay_s=self.base_delay,
                    max_retries=self.max_retries, tick_s=self.tick_interval)

    async def stop(self) -> None:
        """Stop ticking; a send already in flight is allowed to finish."""
        self._running = False
        task, self._task = self._task, None
        if task and not task.done():
            while self._sending:
                await asyncio.sleep(self.tick_interval)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("delivery_queue_stopped", queue_length=len(self._queue))

    async def _drain_loop(self) -> None:
        while self._running:
            if not self._paused and not self._processing and self._queue:
                try:
                    await self.process_next()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("delivery_tick_error", error=str(e), exc_info=True)
            await asyncio.sleep(self.tick_interval)

    async def process_next(self) -> Optional[str]:
        """
        Wait the pacing delay, then attempt the head message once.

        Returns "sent", "requeued", "retry", "dead_lettered", "circuit_open",
        "dropped" (cleared away during a throttled send), or None when
        nothing was attempted.
        """
        if self._processing or self._paused or not self._queue:
            return None

        self._processing = True
        try:
            await self._sleep(self.current_delay)
            if self._paused or not self._queue:
                return None

            message = self._queue[0]
            self._sending = True
            try:
                await self._send(message)
            except CircuitOpenError:
                logger.info("delivery_circuit_open", message_id=message.id, category=self.category)
                return "circuit_open"
            except Exception as e:
                return await self._handle_failure(message, normalize_error(e, "downstream"))

            self._remove(message)
            self._counters["sent"] += 1
            logger.info("message_sent", message_id=message.id, item_id=message.item_id,
                        destination=message.destination, attempts=message.retry_count + 1)
            await self._mark_seen(message)
            self._decay_delay()
            return "sent"
        finally:
            self._sending = False
            self._processing = False

    async def _send(self, message: QueuedMessage) -> SendResult:
        async def attempt() -> SendResult:
            result = await self.sender.send(message.destination, message.payload, message.options)
            raise_for_result(result)
            return result

        if self.breaker is not None:
            return await self.breaker.execute(attempt, self.category)
        return await attempt()

    async def _handle_failure(self, message: QueuedMessage, error: RelayError) -> str:
        message.retry_count += 1
        self._counters["failed"] += 1
        throttled = is_throttle(error)

        if throttled:
            self._counters["throttled"] += 1
            self._on_throttle(error, message)
        else:
            logger.warning("delivery_failed", message_id=message.id, retry_count=message.retry_count,
                           max_retries=self.max_retries, error=str(error))

        if isinstance(error, AuthFailedError):
            logger.error("delivery_auth_failed", message_id=message.id, destination=message.destination,
                         error=str(error))
            self.pause()

        if message.retry_count >= self.max_retries:
            self._remove(message)
            await self._dead_letter(message, str(error))
            return "dead_lettered"

        if throttled:
            if not self._remove(message):
                return "dropped"
            self._queue.append(message)
            self._pending[message.dedup_key] = message.id
            logger.debug("message_demoted", message_id=message.id, queue_length=len(self._queue))
            return "requeued"

        return "retry"

    def _on_throttle(self, error: RelayError, message: QueuedMessage) -> None:
        self._last_throttle_at = self._clock()
        self._throttle_streak += 1
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            self.current_delay = max(retry_after, self.current_delay * 2)
        else:
            self.current_delay = min(self.current_delay * 2, self.max_delay)
        logger.warning("delivery_throttled", message_id=message.id, retry_count=message.retry_count,
                       retry_after_s=retry_after, current_delay_s=self.current_delay,
                       streak=self._throttle_streak)

    def _decay_delay(self) -> None:
        if self._throttle_streak == 0 or self._last_throttle_at is None:
            return
        if self._clock() - self._last_throttle_at < self.throttle_decay_after:
            return
        self.current_delay = max(self.base_delay, self.current_delay / 2)
        if self.current_delay <= self.base_delay:
            self._throttle_streak = 0
        logger.debug("delivery_delay_decreased", current_delay_s=self.current_delay)

    def _remove(self, message: QueuedMessage) -> bool:
        """Drop the message if still queued; clear() may have run during the send."""
        if self._pending.get(message.dedup_key) == message.id:
            del self._pending[message.dedup_key]
        if message not in self._queue:
            return False
        self._queue.remove(message)
        return True

    async def _mark_seen(self, message: QueuedMessage) -> None:
        if not (self.seen_store and message.item_id and message.scope):
            return
        try:
            await self.seen_store.mark_seen(message.item_id, message.scope)
        except Exception as e:
            # Sent already; a failed mark only risks a later duplicate.
            logger.error("mark_seen_failed", message_id=message.id, item_id=message.item_id,
                         scope=message.scope, error=str(e))

    async def _dead_letter(self, message: QueuedMessage, reason: str) -> None:
        record = DeadLetter(message=message, reason=reason)
        self._dead.append(record)
        self._counters["dead_lettered"] += 1
        logger.error("message_dead_lettered", message_id=message.id, item_id=message.item_id,
                     destination=message.destination, retry_count=message.retry_count, reason=reason)
        if self.on_dead_letter:
            outcome = self.on_dead_letter(record)
            if inspect.isawaitable(outcome):
                await outcome
