"""Tests for GuardedSource (rotator + breaker around upstream) and the FeedPoller."""
import asyncio
import pytest
from unittest.mock import AsyncMock

from conftest import NOW, make_item
from backend.connector import MockFeedSource
from backend.gateway import UPSTREAM_CATEGORY, GuardedSource
from backend.poller import FeedPoller, Topic
from core.circuit_breaker import CircuitBreaker
from core.credentials import CredentialRotator
from core.errors import AuthFailedError, CircuitOpenError, SystemicError, ThrottledError
from core.pipeline import NoRetry, PipelineResult, StageContext, StageEngine, StageResult
from models.schemas import FetchResult, FilterType, TopicFilter


def guarded(source, keys=("k0", "k1"), clock=None, rotate_on="error", threshold=5):
    kwargs = {"clock": clock} if clock else {}
    rotator = CredentialRotator(list(keys), **kwargs)
    breaker = CircuitBreaker(threshold=threshold, **kwargs)
    return GuardedSource(source, rotator, breaker, rotate_on=rotate_on)


def counting_engine(outcomes=None):
    """StageEngine stand-in that records contexts and returns canned results."""
    seen: list[StageContext] = []
    outcomes = outcomes or {}

    async def process(ctx):
        seen.append(ctx)
        kind = outcomes.get(ctx.item_id, "ok")
        if kind == "raise":
            raise RuntimeError("engine bug")
        return PipelineResult(success=kind != "fail", skipped=kind == "skip", final_context=ctx)

    engine = AsyncMock(spec=StageEngine)
    engine.process.side_effect = process
    return engine, seen


# ══════════════════════════════════════════════════════════════
#  GuardedSource
# ══════════════════════════════════════════════════════════════

class TestGuardedSource:
    @pytest.mark.asyncio
    async def test_success_marks_credential(self, clock):
        up = guarded(MockFeedSource(items={"q": [make_item()]}), clock=clock)
        result = await up.fetch("q")
        assert len(result.items) == 1
        assert up.rotator.current().health.last_success_at == clock.now

    @pytest.mark.asyncio
    async def test_throttle_rotates_and_is_not_counted(self, clock):
        up = guarded(MockFeedSource(errors=[ThrottledError("429")]), clock=clock)
        with pytest.raises(ThrottledError):
            await up.fetch("q")
        assert up.rotator.current().index == 1
        assert up.breaker.failure_count(UPSTREAM_CATEGORY) == 0

    @pytest.mark.asyncio
    async def test_systemic_error_rotates_when_policy_is_error(self, clock):
        up = guarded(MockFeedSource(errors=[SystemicError("500")]), clock=clock)
        with pytest.raises(SystemicError):
            await up.fetch("q")
        assert up.rotator.current().index == 1
        assert up.breaker.failure_count(UPSTREAM_CATEGORY) == 1

    @pytest.mark.asyncio
    async def test_unhealthy_policy_keeps_credential_until_unhealthy(self, clock):
        errors = [SystemicError("500")] * 3
        up = guarded(MockFeedSource(errors=errors), clock=clock, rotate_on="unhealthy")
        for expected in (0, 0, 1):
            with pytest.raises(SystemicError):
                await up.fetch("q")
            assert up.rotator.current().index == expected

    @pytest.mark.asyncio
    async def test_foreign_exception_normalized(self, clock):
        up = guarded(MockFeedSource(errors=[ValueError("bad json")]), clock=clock)
        with pytest.raises(SystemicError) as exc_info:
            await up.fetch("q")
        assert isinstance(exc_info.value.__cause__, ValueError)

    @pytest.mark.asyncio
    async def test_open_circuit_does_not_touch_credential(self, clock):
        up = guarded(MockFeedSource(errors=[SystemicError("500")]), clock=clock, threshold=1)
        with pytest.raises(SystemicError):
            await up.fetch("q")
        current = up.rotator.current()
        errors_before = current.health.error_count
        with pytest.raises(CircuitOpenError):
            await up.fetch("q")
        assert current.health.error_count == errors_before


# ══════════════════════════════════════════════════════════════
#  FeedPoller
# ══════════════════════════════════════════════════════════════

class TestPollCycle:
    @pytest.mark.asyncio
    async def test_items_processed_oldest_first_with_pacing(self, clock, fake_sleep):
        items = [make_item("new", minutes_old=1), make_item("old", minutes_old=30), make_item("mid", minutes_old=10)]
        source = MockFeedSource(items={"launch": items})
        engine, seen = counting_engine({"mid": "skip"})
        topic = Topic(scope="t", destination="-100:1", query="launch")
        poller = FeedPoller(guarded(source, clock=clock), engine, [topic],
                            inter_item_delay=1.5, sleep=fake_sleep)

        stats = await poller.poll_cycle()

        assert [c.item_id for c in seen] == ["old", "mid", "new"]
        assert all(c.scope == "t" and c.destination == "-100:1" for c in seen)
        assert fake_sleep.calls == [1.5, 1.5]
        assert stats == {"topics": 1, "fetched": 3, "completed": 2, "skipped": 1, "failed": 0, "errors": 0}

    @pytest.mark.asyncio
    async def test_one_item_failure_does_not_abort_batch(self, clock, fake_sleep):
        items = [make_item("a", minutes_old=3), make_item("b", minutes_old=2), make_item("c", minutes_old=1)]
        engine, seen = counting_engine({"a": "raise", "b": "fail"})
        poller = FeedPoller(guarded(MockFeedSource(items={"": items}), clock=clock), engine,
                            [Topic(scope="t", destination="d")], sleep=fake_sleep)

        stats = await poller.poll_cycle()
        assert len(seen) == 3
        assert stats["failed"] == 2
        assert stats["completed"] == 1

    @pytest.mark.asyncio
    async def test_query_built_from_filters_and_cursor_kept(self, clock, fake_sleep):
        source = MockFeedSource(items={"from:alice": [make_item("5")]})
        engine, _ = counting_engine()
        topic = Topic(scope="t", destination="d", filters=[TopicFilter(type=FilterType.USER, value="alice")])
        poller = FeedPoller(guarded(source, clock=clock), engine, [topic], sleep=fake_sleep)

        await poller.poll_cycle()
        await poller.poll_cycle()

        assert source.calls[0]["query"] == "from:alice"
        assert source.calls[0]["cursor"] is None
        assert source.calls[1]["cursor"] == "5"
        assert poller.cursor("t") == "5"

    @pytest.mark.asyncio
    async def test_disabled_topics_skipped(self, clock, fake_sleep):
        source = MockFeedSource()
        engine, _ = counting_engine()
        poller = FeedPoller(guarded(source, clock=clock), engine,
                            [Topic(scope="off", destination="d", enabled=False)], sleep=fake_sleep)
        stats = await poller.poll_cycle()
        assert stats["topics"] == 0
        assert source.calls == []

    @pytest.mark.asyncio
    async def test_throttled_topic_does_not_stop_cycle(self, clock, fake_sleep):
        source = MockFeedSource(items={"b": [make_item("1")]}, errors=[ThrottledError("429")])
        engine, seen = counting_engine()
        topics = [Topic(scope="a", destination="d", query="a"), Topic(scope="b", destination="d", query="b")]
        poller = FeedPoller(guarded(source, clock=clock), engine, topics, sleep=fake_sleep)

        stats = await poller.poll_cycle()
        assert stats["errors"] == 1
        assert [c.scope for c in seen] == ["b"]
        assert source.calls[1]["credential"] == "k1"

    @pytest.mark.asyncio
    async def test_open_circuit_ends_cycle(self, clock, fake_sleep):
        source = MockFeedSource(errors=[SystemicError("500")])
        engine, _ = counting_engine()
        topics = [Topic(scope=s, destination="d", query=s) for s in ("a", "b", "c")]
        poller = FeedPoller(guarded(source, clock=clock, threshold=1), engine, topics, sleep=fake_sleep)

        stats = await poller.poll_cycle()
        assert len(source.calls) == 1
        assert stats["errors"] == 2

    @pytest.mark.asyncio
    async def test_auth_with_fallback_rotates_and_continues(self, clock, fake_sleep):
        source = MockFeedSource(items={"b": []}, errors=[AuthFailedError("401")])
        engine, _ = counting_engine()
        topics = [Topic(scope="a", destination="d", query="a"), Topic(scope="b", destination="d", query="b")]
        poller = FeedPoller(guarded(source, clock=clock), engine, topics, sleep=fake_sleep)

        stats = await poller.poll_cycle()
        assert stats["errors"] == 1
        assert poller.upstream.rotator.current().index == 1

    @pytest.mark.asyncio
    async def test_auth_without_fallback_is_fatal(self, clock, fake_sleep):
        source = MockFeedSource(errors=[AuthFailedError("401")])
        engine, _ = counting_engine()
        poller = FeedPoller(guarded(source, keys=("only",), clock=clock), engine,
                            [Topic(scope="a", destination="d")], sleep=fake_sleep)
        with pytest.raises(AuthFailedError):
            await poller.poll_cycle()


class TestPollLoop:
    @pytest.mark.asyncio
    async def test_fatal_auth_stops_loop(self):
        source = MockFeedSource(errors=[AuthFailedError("401")])
        engine, _ = counting_engine()
        poller = FeedPoller(guarded(source, keys=("only",)), engine,
                            [Topic(scope="a", destination="d")], interval=0.01)
        await poller.start()
        for _ in range(100):
            if not poller.is_running:
                break
            await asyncio.sleep(0.01)

        status = poller.status()
        assert status["running"] is False
        assert status["stopped_fatal"] is True
        await poller.stop()

    @pytest.mark.asyncio
    async def test_start_stop(self):
        engine, _ = counting_engine()
        poller = FeedPoller(guarded(MockFeedSource()), engine,
                            [Topic(scope="a", destination="d")], interval=0.01)
        await poller.start()
        await asyncio.sleep(0.03)
        await poller.stop()
        assert not poller.is_running
        assert poller.status()["cycles"] >= 1

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_item_finish(self):
        items = [make_item("a", minutes_old=2), make_item("b", minutes_old=1)]
        started = asyncio.Event()
        finished: list[str] = []

        async def slow_stage(ctx):
            started.set()
            await asyncio.sleep(0.2)
            finished.append(ctx.item_id)
            return StageResult.ok()

        engine = StageEngine(sleep=asyncio.sleep)
        engine.register_stage("slow", slow_stage, NoRetry())
        poller = FeedPoller(guarded(MockFeedSource(items={"": items})), engine,
                            [Topic(scope="t", destination="d")], interval=60, inter_item_delay=0.01)

        await poller.start()
        await asyncio.wait_for(started.wait(), timeout=1)
        await poller.stop()

        assert finished == ["a"]
        assert not poller.is_running

    @pytest.mark.asyncio
    async def test_stop_interrupts_interval_wait(self):
        engine, _ = counting_engine()
        poller = FeedPoller(guarded(MockFeedSource()), engine,
                            [Topic(scope="a", destination="d")], interval=3600)
        await poller.start()
        await asyncio.sleep(0.01)
        await asyncio.wait_for(poller.stop(), timeout=1)
        assert poller.status()["cycles"] == 1
