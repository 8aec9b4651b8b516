"""
Per-key fixed-window rate limiting for authenticated traffic and auth endpoints.

Counters live in the shared KeyValueStore under "ratelimit:<key>". A key's window starts on its
first hit and the count restarts once now >= reset_time. Named policies come from settings.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from ums.config import settings
from ums.core.metrics import RATE_LIMIT_REJECTIONS
from ums.core.store import Clock, KeyValueStore, get_store

logger = logging.getLogger(__name__)

KEY_PREFIX = "ratelimit:"
WARN_RATIO = 0.8


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    window_seconds: float
    max_requests: int
    message: str


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    count: int
    limit: int
    remaining: int
    reset_time: float
    retry_after: int

    @property
    def reset_iso(self) -> str:
        return _iso(self.reset_time)

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_iso,
        }


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def general_policy() -> RateLimitPolicy:
    return RateLimitPolicy(
        "general",
        settings.rate_limit_general_window_seconds,
        settings.rate_limit_general_max,
        "Too many API requests. Please slow down.",
    )


def admin_policy() -> RateLimitPolicy:
    return RateLimitPolicy(
        "admin",
        settings.rate_limit_admin_window_seconds,
        settings.rate_limit_admin_max,
        "Too many admin operations. Please slow down.",
    )


def sensitive_policy() -> RateLimitPolicy:
    return RateLimitPolicy(
        "sensitive",
        settings.rate_limit_sensitive_window_seconds,
        settings.rate_limit_sensitive_max,
        "Too many sensitive operations. Please try again later.",
    )


def upload_policy() -> RateLimitPolicy:
    return RateLimitPolicy(
        "upload",
        settings.rate_limit_upload_window_seconds,
        settings.rate_limit_upload_max,
        "Too many file uploads. Please try again later.",
    )


def auth_policy() -> RateLimitPolicy:
    return RateLimitPolicy(
        "auth",
        settings.rate_limit_auth_window_seconds,
        settings.rate_limit_auth_max,
        "Too many authentication attempts. Please try again later.",
    )


def _log_limit_reached(key: str, policy: RateLimitPolicy) -> None:
    logger.warning("Rate limit exceeded: key=%s policy=%s limit=%d", key, policy.name, policy.max_requests)


class RateLimiter:
    def __init__(
        self,
        store: KeyValueStore,
        clock: Clock = time.time,
        on_limit_reached: Callable[[str, RateLimitPolicy], None] = _log_limit_reached,
    ) -> None:
        self._store = store
        self._clock = clock
        self._on_limit_reached = on_limit_reached

    async def check(self, key: str, policy: RateLimitPolicy) -> RateLimitResult:
        """Count one request for key under policy and report whether it is allowed."""
        now = self._clock()
        entry = await self._store.increment(f"{KEY_PREFIX}{key}", policy.window_seconds, now)
        count = int(entry["count"])
        reset_time = float(entry["reset_time"])
        if count > policy.max_requests:
            # fire once per key per window, on the first request over the limit
            if count == policy.max_requests + 1:
                self._on_limit_reached(key, policy)
            RATE_LIMIT_REJECTIONS.labels(policy=policy.name).inc()
            return RateLimitResult(
                allowed=False,
                count=count,
                limit=policy.max_requests,
                remaining=0,
                reset_time=reset_time,
                retry_after=max(1, math.ceil(reset_time - now)),
            )
        if count > policy.max_requests * WARN_RATIO:
            logger.warning(
                "Key approaching rate limit: key=%s policy=%s count=%d limit=%d",
                key,
                policy.name,
                count,
                policy.max_requests,
            )
        return RateLimitResult(
            allowed=True,
            count=count,
            limit=policy.max_requests,
            remaining=max(0, policy.max_requests - count),
            reset_time=reset_time,
            retry_after=0,
        )

    async def status(self, key: str, policy: RateLimitPolicy | None = None) -> dict | None:
        """Current counter for key (remaining computed against the general policy by default)."""
        policy = policy or general_policy()
        entry = await self._store.get(f"{KEY_PREFIX}{key}")
        if not entry:
            return None
        count = int(entry["count"])
        return {
            "count": count,
            "remaining": max(0, policy.max_requests - count),
            "resetTime": _iso(float(entry["reset_time"])),
        }

    async def reset(self, key: str) -> bool:
        return await self._store.delete(f"{KEY_PREFIX}{key}")

    async def entries(self) -> list[dict]:
        result = []
        for full_key, entry in await self._store.items(KEY_PREFIX):
            result.append(
                {
                    "key": full_key[len(KEY_PREFIX):],
                    "count": int(entry["count"]),
                    "resetTime": _iso(float(entry["reset_time"])),
                    "lastRequest": _iso(float(entry["last_request"])),
                }
            )
        return result

    async def sweep(self) -> int:
        removed = await self._store.sweep(KEY_PREFIX, self._clock())
        if removed:
            logger.info("Rate limit sweep removed %d expired entries", removed)
        return removed


def get_rate_limiter() -> RateLimiter:
    return RateLimiter(get_store())
