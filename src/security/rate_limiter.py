"""Redis-backed fixed-window rate limiter for session submissions.

Uses INCR + EXPIRE. Clients are keyed by the keyed hash of their IP (the
same hash the consent ledger stores), never the raw address. Checked at
the HTTP boundary before a session is created.

Usage:
    limiter = RateLimiter(redis_client)
    await limiter.enforce_submission(client_hash)   # raises RateLimited
"""

from __future__ import annotations

import logging

from redis.asyncio import Redis
from redis.exceptions import RedisError

from src.config import settings
from src.errors import RateLimited

logger = logging.getLogger(__name__)


def submission_key(client_hash: str) -> str:
    return f"rate:{client_hash}:submit"


class RateLimiter:
    """Fixed-window rate limiter backed by Redis INCR + EXPIRE."""

    def __init__(self, redis: Redis, limit: int | None = None, window: int | None = None) -> None:
        self._redis = redis
        self._limit = limit or settings.processing.submission_rate_limit
        self._window = window or settings.processing.submission_rate_window

    async def check(self, key: str, limit: int, window: int) -> tuple[bool, int]:
        """Count one request against `key`.

        Returns:
            (allowed, retry_after) — retry_after is seconds until the
            window resets (0 if allowed).
        """
        try:
            count = await self._redis.incr(key)
            if count == 1:
                await self._redis.expire(key, window)

            if count > limit:
                ttl = await self._redis.ttl(key)
                return False, max(ttl, 1)

            return True, 0
        except RedisError:
            logger.exception("Rate limiter Redis error for key %s", key)
            # Fail open: an unreachable Redis must not block submissions
            return True, 0

    async def enforce_submission(self, client_hash: str | None) -> None:
        """Raise RateLimited when the client exceeded its submission budget."""
        if not client_hash:
            return
        allowed, retry_after = await self.check(submission_key(client_hash), self._limit, self._window)
        if not allowed:
            logger.warning("Submission rate limit hit: client=%s retry_after=%ds", client_hash, retry_after)
            raise RateLimited(retry_after)
