"""
Key-value store behind the CSRF and rate-limit registries.

MemoryStore keeps entries in a lock-guarded dict inside this process; a periodic sweep removes
expired entries. RedisStore keeps them in Redis hashes with native expiry, so several app
instances share one registry. Values are flat mappings; RedisStore returns them as strings, so
callers coerce numeric fields themselves.
"""

from __future__ import annotations

import abc
import logging
import threading
import time
from typing import Any, Callable

from ums.config import settings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

# Lazy singleton chosen from settings.store_backend
_store: KeyValueStore | None = None


class KeyValueStore(abc.ABC):
    @abc.abstractmethod
    async def get(self, key: str) -> dict[str, Any] | None:
        """Return the live mapping stored at key, or None if missing or expired."""

    @abc.abstractmethod
    async def set(self, key: str, value: dict[str, Any], expires_at: float) -> None:
        """Replace the mapping at key; it expires at the given unix timestamp."""

    @abc.abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key. True if something was removed."""

    @abc.abstractmethod
    async def increment(self, key: str, window_seconds: float, now: float) -> dict[str, Any]:
        """
        Atomically count one hit in a fixed window and return {count, reset_time, last_request}.
        The window (and count) restarts when now >= reset_time.
        """

    @abc.abstractmethod
    async def items(self, prefix: str = "") -> list[tuple[str, dict[str, Any]]]:
        """All live (key, mapping) pairs whose key starts with prefix."""

    @abc.abstractmethod
    async def sweep(self, prefix: str = "", now: float | None = None) -> int:
        """Remove expired entries under prefix. Returns the number removed."""

    async def close(self) -> None:
        return None


class MemoryStore(KeyValueStore):
    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._data: dict[str, tuple[dict[str, Any], float]] = {}

    def _live(self, key: str, now: float) -> dict[str, Any] | None:
        # caller holds the lock
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at <= now:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            value = self._live(key, self._clock())
            return dict(value) if value is not None else None

    async def set(self, key: str, value: dict[str, Any], expires_at: float) -> None:
        with self._lock:
            self._data[key] = (dict(value), expires_at)

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    async def increment(self, key: str, window_seconds: float, now: float) -> dict[str, Any]:
        with self._lock:
            item = self._data.get(key)
            entry = item[0] if item is not None else None
            if entry is None or now >= entry["reset_time"]:
                entry = {"count": 0, "reset_time": now + window_seconds, "last_request": now}
            entry["count"] += 1
            entry["last_request"] = now
            self._data[key] = (entry, entry["reset_time"])
            return dict(entry)

    async def items(self, prefix: str = "") -> list[tuple[str, dict[str, Any]]]:
        now = self._clock()
        with self._lock:
            return [
                (key, dict(value))
                for key, (value, expires_at) in self._data.items()
                if key.startswith(prefix) and expires_at > now
            ]

    async def sweep(self, prefix: str = "", now: float | None = None) -> int:
        now = self._clock() if now is None else now
        with self._lock:
            expired = [
                key
                for key, (_, expires_at) in self._data.items()
                if key.startswith(prefix) and expires_at <= now
            ]
            for key in expired:
                del self._data[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class RedisStore(KeyValueStore):
    """Shared store; Redis expires keys itself, so sweep() has nothing to do."""

    def __init__(self, client) -> None:
        self._redis = client

    async def get(self, key: str) -> dict[str, Any] | None:
        data = await self._redis.hgetall(key)
        return dict(data) if data else None

    async def set(self, key: str, value: dict[str, Any], expires_at: float) -> None:
        pipe = self._redis.pipeline()
        pipe.delete(key)
        pipe.hset(key, mapping={k: str(v) for k, v in value.items()})
        pipe.pexpireat(key, int(expires_at * 1000))
        await pipe.execute()

    async def delete(self, key: str) -> bool:
        return bool(await self._redis.delete(key))

    async def increment(self, key: str, window_seconds: float, now: float) -> dict[str, Any]:
        pipe = self._redis.pipeline()
        pipe.hincrby(key, "count", 1)
        pipe.hsetnx(key, "reset_time", repr(now + window_seconds))
        pipe.hset(key, "last_request", repr(now))
        pipe.hgetall(key)
        pipe.pttl(key)
        results = await pipe.execute()
        entry = results[3]
        ttl = int(results[4])
        reset_time = float(entry["reset_time"])
        if ttl == -1:
            # new window: the key disappears (and the count restarts) at reset_time
            await self._redis.pexpireat(key, int(reset_time * 1000))
        return {
            "count": int(entry["count"]),
            "reset_time": reset_time,
            "last_request": float(entry["last_request"]),
        }

    async def items(self, prefix: str = "") -> list[tuple[str, dict[str, Any]]]:
        result = []
        async for key in self._redis.scan_iter(match=f"{prefix}*"):
            data = await self._redis.hgetall(key)
            if data:
                result.append((key, dict(data)))
        return result

    async def sweep(self, prefix: str = "", now: float | None = None) -> int:
        return 0

    async def close(self) -> None:
        await self._redis.aclose()


def get_store() -> KeyValueStore:
    """Return the process-wide store (lazy). Redis when STORE_BACKEND=redis, memory otherwise."""
    global _store
    if _store is not None:
        return _store
    if settings.store_backend == "redis":
        from redis.asyncio import from_url

        _store = RedisStore(from_url(settings.redis_url, encoding="utf-8", decode_responses=True))
        logger.info("Security registries use Redis store at %s", settings.redis_url)
    else:
        _store = MemoryStore()
        logger.info("Security registries use in-process memory store (not shared across instances)")
    return _store


async def close_store() -> None:
    """Close the store (e.g. on app shutdown)."""
    global _store
    if _store is not None:
        try:
            await _store.close()
        except Exception as e:
            logger.warning("Store: error on close: %s", e)
        _store = None
