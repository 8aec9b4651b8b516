"""
Per-user CSRF token registry.

At most one live token per user. Only the SHA256 hash and the absolute expiry are stored; the
plaintext is handed out once on issue and can only be regenerated, never read back.
"""

from __future__ import annotations

import hmac
import logging
import time

from ums.config import settings
from ums.core.auth import generate_opaque_token, hash_token
from ums.core.store import Clock, KeyValueStore, get_store

logger = logging.getLogger(__name__)

KEY_PREFIX = "csrf:"
TOKEN_BYTES = 32


def _key(user_id: int | str) -> str:
    return f"{KEY_PREFIX}{user_id}"


class CSRFGuard:
    def __init__(
        self,
        store: KeyValueStore,
        max_age_seconds: float | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._store = store
        self._max_age = max_age_seconds if max_age_seconds is not None else settings.csrf_token_max_age_seconds
        self._clock = clock

    async def issue_for_user(self, user_id: int | str) -> str:
        """Generate a token for user_id, replacing any previous one. Returns the plaintext."""
        token = generate_opaque_token(TOKEN_BYTES)
        await self._store.set(
            _key(user_id),
            {"token_hash": hash_token(token), "expires_at": self._clock() + self._max_age},
            self._clock() + self._max_age,
        )
        logger.debug("CSRF token generated for user_id=%s", user_id)
        return token

    async def validate(self, user_id: int | str, presented: str) -> bool:
        stored = await self._store.get(_key(user_id))
        if not stored:
            return False
        if float(stored["expires_at"]) < self._clock():
            await self._store.delete(_key(user_id))
            return False
        return hmac.compare_digest(str(stored["token_hash"]), hash_token(presented))

    async def get_token_hash(self, user_id: int | str) -> str | None:
        stored = await self._store.get(_key(user_id))
        if not stored or float(stored["expires_at"]) < self._clock():
            return None
        return str(stored["token_hash"])

    async def clear_for_user(self, user_id: int | str) -> None:
        await self._store.delete(_key(user_id))
        logger.info("CSRF token cleared for user_id=%s", user_id)

    async def sweep(self) -> int:
        removed = await self._store.sweep(KEY_PREFIX, self._clock())
        if removed:
            logger.info("CSRF sweep removed %d expired tokens", removed)
        return removed


def get_csrf_guard() -> CSRFGuard:
    return CSRFGuard(get_store())
