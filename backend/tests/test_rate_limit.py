"""Tests for the per-user rate limiter: fixed windows, Redis-backed counters and API enforcement."""

import fnmatch
from unittest.mock import patch

import pytest
from httpx import AsyncClient

from conftest import PASSWORD, bearer, login
from ums.config import settings
from ums.core.rate_limit import RateLimiter, RateLimitPolicy
from ums.core.store import MemoryStore, RedisStore

POLICY = RateLimitPolicy("test", window_seconds=60, max_requests=3, message="Slow down")


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedisPipeline:
    """Queues hash commands and applies them in order on execute(), like a MULTI block."""

    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._ops = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self._ops.append((name, args, kwargs))
            return self

        return queue

    async def execute(self):
        return [await getattr(self._redis, name)(*args, **kwargs) for name, args, kwargs in self._ops]


class FakeRedis:
    """In-memory Redis-like client (hashes and expiry only) with decode_responses semantics."""

    def __init__(self):
        self.hashes: dict[str, dict[str, str]] = {}
        self.expire_at_ms: dict[str, int] = {}

    def pipeline(self):
        return FakeRedisPipeline(self)

    async def hincrby(self, key, field, amount=1):
        h = self.hashes.setdefault(key, {})
        h[field] = str(int(h.get(field, "0")) + amount)
        return int(h[field])

    async def hsetnx(self, key, field, value):
        h = self.hashes.setdefault(key, {})
        if field in h:
            return 0
        h[field] = str(value)
        return 1

    async def hset(self, key, field=None, value=None, mapping=None):
        h = self.hashes.setdefault(key, {})
        if field is not None:
            h[field] = str(value)
        for k, v in (mapping or {}).items():
            h[k] = str(v)
        return 1

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def pttl(self, key):
        if key not in self.hashes:
            return -2
        return 1000 if key in self.expire_at_ms else -1

    async def pexpireat(self, key, when_ms):
        self.expire_at_ms[key] = when_ms
        return 1

    async def delete(self, key):
        self.expire_at_ms.pop(key, None)
        return 1 if self.hashes.pop(key, None) is not None else 0

    async def scan_iter(self, match="*"):
        for key in list(self.hashes):
            if fnmatch.fnmatch(key, match):
                yield key

    async def aclose(self):
        pass


@pytest.mark.asyncio
async def test_requests_over_limit_are_denied_until_window_ends():
    clock = FakeClock()
    limiter = RateLimiter(MemoryStore(clock=clock), clock=clock)

    results = [await limiter.check("1", POLICY) for _ in range(3)]
    assert all(r.allowed for r in results)
    assert [r.remaining for r in results] == [2, 1, 0]

    clock.advance(10)
    denied = await limiter.check("1", POLICY)
    assert not denied.allowed
    assert denied.remaining == 0
    assert 0 < denied.retry_after <= POLICY.window_seconds
    assert denied.retry_after == 50

    clock.advance(50)
    again = await limiter.check("1", POLICY)
    assert again.allowed
    assert again.count == 1


@pytest.mark.asyncio
async def test_keys_are_counted_independently():
    clock = FakeClock()
    limiter = RateLimiter(MemoryStore(clock=clock), clock=clock)
    for _ in range(3):
        await limiter.check("1", POLICY)
    assert not (await limiter.check("1", POLICY)).allowed
    assert (await limiter.check("2", POLICY)).allowed


@pytest.mark.asyncio
async def test_limit_reached_hook_fires_once_per_window():
    clock = FakeClock()
    calls = []
    limiter = RateLimiter(MemoryStore(clock=clock), clock=clock, on_limit_reached=lambda k, p: calls.append(k))
    for _ in range(6):
        await limiter.check("1", POLICY)
    assert calls == ["1"]

    clock.advance(60)
    for _ in range(4):
        await limiter.check("1", POLICY)
    assert calls == ["1", "1"]


@pytest.mark.asyncio
async def test_headers_report_limit_remaining_and_reset():
    clock = FakeClock()
    limiter = RateLimiter(MemoryStore(clock=clock), clock=clock)
    result = await limiter.check("1", POLICY)
    headers = result.headers()
    assert headers["X-RateLimit-Limit"] == "3"
    assert headers["X-RateLimit-Remaining"] == "2"
    assert headers["X-RateLimit-Reset"].startswith("1970-01-12T")


@pytest.mark.asyncio
async def test_status_reset_entries_and_sweep():
    clock = FakeClock()
    limiter = RateLimiter(MemoryStore(clock=clock), clock=clock)
    await limiter.check("1", POLICY)
    await limiter.check("1", POLICY)
    await limiter.check("2", POLICY)

    status = await limiter.status("1", POLICY)
    assert status["count"] == 2
    assert status["remaining"] == 1
    assert sorted(e["key"] for e in await limiter.entries()) == ["1", "2"]

    assert await limiter.reset("1") is True
    assert await limiter.status("1") is None
    assert await limiter.reset("1") is False

    clock.advance(61)
    assert await limiter.sweep() == 1
    assert await limiter.entries() == []


@pytest.mark.asyncio
async def test_redis_store_counts_in_fixed_window():
    fake = FakeRedis()
    clock = FakeClock()
    limiter = RateLimiter(RedisStore(fake), clock=clock)

    first = await limiter.check("7", POLICY)
    assert first.allowed and first.count == 1
    key = "ratelimit:7"
    assert fake.expire_at_ms[key] == int((clock.now + 60) * 1000)

    for _ in range(2):
        assert (await limiter.check("7", POLICY)).allowed
    denied = await limiter.check("7", POLICY)
    assert not denied.allowed
    assert denied.reset_time == clock.now + 60

    # Redis drops the key at reset_time; the next hit starts a new window
    await fake.delete(key)
    assert (await limiter.check("7", POLICY)).count == 1


@pytest.mark.asyncio
async def test_redis_store_set_get_items():
    fake = FakeRedis()
    store = RedisStore(fake)
    await store.set("csrf:1", {"token_hash": "abc", "expires_at": 5.0}, 5.0)
    assert await store.get("csrf:1") == {"token_hash": "abc", "expires_at": "5.0"}
    assert fake.expire_at_ms["csrf:1"] == 5000
    assert [k for k, _ in await store.items("csrf:")] == ["csrf:1"]
    assert await store.delete("csrf:1") is True
    assert await store.get("csrf:1") is None


@pytest.mark.asyncio
async def test_auth_endpoint_returns_429_after_limit(client: AsyncClient, test_user):
    with patch.object(settings, "rate_limit_auth_max", 3):
        for _ in range(3):
            resp = await client.post("/api/v1/auth/login", json={"email": "user@test.com", "password": "Wrong1!x"})
            assert resp.status_code == 401
        resp = await client.post("/api/v1/auth/login", json={"email": "user@test.com", "password": PASSWORD})
    assert resp.status_code == 429
    body = resp.json()
    assert body["success"] is False
    assert body["limit"] == 3
    assert body["remaining"] == 0
    assert 0 < body["retryAfter"] <= settings.rate_limit_auth_window_seconds
    assert resp.headers["Retry-After"] == str(body["retryAfter"])


@pytest.mark.asyncio
async def test_auth_limit_is_keyed_by_submitted_email(client: AsyncClient, test_user):
    with patch.object(settings, "rate_limit_auth_max", 2):
        for _ in range(3):
            await client.post("/api/v1/auth/login", json={"email": "other@test.com", "password": "Wrong1!x"})
        resp = await client.post("/api/v1/auth/login", json={"email": "user@test.com", "password": PASSWORD})
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_authenticated_responses_carry_rate_limit_headers(client: AsyncClient, test_user):
    session = await login(client)
    resp = await client.get("/api/v1/auth/me", headers=bearer(session))
    assert resp.status_code == 200
    assert resp.headers["X-RateLimit-Limit"] == str(settings.rate_limit_general_max)
    assert resp.headers["X-RateLimit-Remaining"] == str(settings.rate_limit_general_max - 1)
    assert "X-RateLimit-Reset" in resp.headers


@pytest.mark.asyncio
async def test_general_limit_rejects_authenticated_user(client: AsyncClient, test_user):
    session = await login(client)
    with patch.object(settings, "rate_limit_general_max", 2):
        for _ in range(2):
            assert (await client.get("/api/v1/auth/me", headers=bearer(session))).status_code == 200
        resp = await client.get("/api/v1/auth/me", headers=bearer(session))
    assert resp.status_code == 429
    assert resp.json()["message"] == "Too many API requests. Please slow down."
