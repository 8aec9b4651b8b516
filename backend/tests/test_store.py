"""Unit tests for the in-memory key-value store."""

import pytest

from ums.core.store import MemoryStore


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.mark.asyncio
async def test_set_get_delete():
    clock = FakeClock()
    store = MemoryStore(clock=clock)
    await store.set("k", {"a": 1}, clock.now + 10)
    assert await store.get("k") == {"a": 1}
    assert await store.delete("k") is True
    assert await store.get("k") is None
    assert await store.delete("k") is False


@pytest.mark.asyncio
async def test_expired_entries_are_hidden_and_swept():
    clock = FakeClock()
    store = MemoryStore(clock=clock)
    await store.set("csrf:1", {"token_hash": "x"}, clock.now + 5)
    await store.set("csrf:2", {"token_hash": "y"}, clock.now + 50)
    await store.set("other:1", {"v": 1}, clock.now + 5)
    clock.advance(10)

    assert await store.get("csrf:1") is None
    assert [k for k, _ in await store.items("csrf:")] == ["csrf:2"]
    # csrf:1 was already dropped by get(); only the prefixed, expired "other" remains to sweep
    assert await store.sweep("csrf:", clock.now) == 0
    assert await store.sweep("other:", clock.now) == 1
    assert await store.get("csrf:2") == {"token_hash": "y"}


@pytest.mark.asyncio
async def test_increment_counts_within_window_and_restarts_after():
    clock = FakeClock()
    store = MemoryStore(clock=clock)
    first = await store.increment("ratelimit:1", 60, clock.now)
    assert first["count"] == 1
    assert first["reset_time"] == clock.now + 60

    clock.advance(30)
    second = await store.increment("ratelimit:1", 60, clock.now)
    assert second["count"] == 2
    assert second["reset_time"] == first["reset_time"]
    assert second["last_request"] == clock.now

    clock.advance(30)
    third = await store.increment("ratelimit:1", 60, clock.now)
    assert third["count"] == 1
    assert third["reset_time"] == clock.now + 60


@pytest.mark.asyncio
async def test_returned_mappings_are_copies():
    clock = FakeClock()
    store = MemoryStore(clock=clock)
    await store.set("k", {"a": 1}, clock.now + 10)
    got = await store.get("k")
    got["a"] = 2
    assert await store.get("k") == {"a": 1}
