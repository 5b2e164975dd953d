"""Shared test fixtures for the feed relay."""
import asyncio
import pytest
from datetime import datetime, timedelta, timezone

from models.schemas import FeedItem


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records every requested wait and advances the paired clock instead of blocking."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)
        await asyncio.sleep(0)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_item(item_id="1001", text="hello world", author="alice", minutes_old=5, **kwargs) -> FeedItem:
    return FeedItem(
        id=item_id,
        text=text,
        author=author,
        created_at=NOW - timedelta(minutes=minutes_old),
        url=f"https://example.com/{author}/{item_id}",
        **kwargs,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock) -> FakeSleep:
    return FakeSleep(clock)


@pytest.fixture
def item() -> FeedItem:
    return make_item()
