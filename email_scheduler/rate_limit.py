"""Fixed hour-window rate limiter mirrored in Redis and SQLite.

Every send is counted in the bucket of the wall-clock UTC hour it happened in.
Redis holds the fast counter that workers read before each send; the
``rate_limit_tracking`` table holds the same count durably so the Redis state
can be rebuilt after a restart without scanning send history.

Example:
    Typical worker usage::

        limiter = RateLimiter(persistence, redis, max_emails_per_hour=200)
        if await limiter.check_allowed(user_id):
            await send(...)
            await limiter.increment(user_id)
        else:
            retry_at = await limiter.next_available_slot(user_id)
"""

from __future__ import annotations

import time
from datetime import datetime, timezone

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .logger import get_logger
from .persistence import Persistence

WINDOW_SECONDS = 3600
CACHE_TTL_SECONDS = 2 * WINDOW_SECONDS


def window_start(instant: float) -> int:
    """Return the epoch second at which the hour containing ``instant`` starts."""
    seconds = int(instant)
    return seconds - seconds % WINDOW_SECONDS


def window_key(user_id: int, instant: float) -> str:
    """Return the Redis key of the quota bucket for ``user_id`` at ``instant``."""
    start = datetime.fromtimestamp(window_start(instant), tz=timezone.utc)
    return f"rate_limit:user:{user_id}:hour:{start.strftime('%Y-%m-%dT%H:%M:%SZ')}"


class RateLimiter:
    """Per-user hourly quota tracker.

    Attributes:
        persistence: Durable store holding one counter row per (user, window).
        redis: Client used for the fast, shared counter.
        max_emails_per_hour: Default quota applied when no explicit limit is given.
        fail_open: When ``True`` a Redis failure lets sends through instead of
            blocking the pipeline; when ``False`` the error propagates.
    """

    def __init__(
        self,
        persistence: Persistence,
        redis: Redis,
        *,
        max_emails_per_hour: int = 200,
        fail_open: bool = True,
        logger=None,
    ):
        self.persistence = persistence
        self.redis = redis
        self.max_emails_per_hour = int(max_emails_per_hour)
        self.fail_open = bool(fail_open)
        self.logger = logger or get_logger("RateLimiter")

    def _limit(self, limit: int | None) -> int:
        if limit is None or int(limit) <= 0:
            return self.max_emails_per_hour
        return int(limit)

    async def get_count(self, user_id: int) -> int:
        """Return the cached send count of the current window."""
        key = window_key(user_id, time.time())
        try:
            value = await self.redis.get(key)
        except RedisError as exc:
            if not self.fail_open:
                raise
            self.logger.error("Error reading rate limit counter %s: %s", key, exc)
            return 0
        return int(value) if value else 0

    async def check_allowed(self, user_id: int, limit: int | None = None) -> bool:
        """Return ``True`` while the user is below its hourly quota.

        Args:
            user_id: Owner of the email about to be sent.
            limit: Quota to enforce; defaults to ``max_emails_per_hour``.
        """
        now = time.time()
        key = window_key(user_id, now)
        try:
            value = await self.redis.get(key)
        except RedisError as exc:
            if not self.fail_open:
                raise
            self.logger.error("Rate limit check failed for user %s, allowing send: %s", user_id, exc)
            return True

        count = int(value) if value else 0
        quota = self._limit(limit)
        if count >= quota:
            self.logger.warning(
                "Rate limit exceeded for user %s in window %s (%d/%d)",
                user_id,
                window_start(now),
                count,
                quota,
            )
            return False
        return True

    async def increment(self, user_id: int, limit: int | None = None) -> int:
        """Count one accepted send for the current window.

        ``limit`` is the quota enforced for the send and only appears in the log.

        The Redis counter is incremented atomically and given its expiry on the
        first hit of the window. The durable row is upserted independently, so
        the count stays reconstructible even when Redis is unavailable.

        Returns:
            The new count of the window.
        """
        now = time.time()
        key = window_key(user_id, now)
        cached: int | None = None
        try:
            cached = int(await self.redis.incr(key))
            if cached == 1:
                await self.redis.expire(key, CACHE_TTL_SECONDS)
        except RedisError as exc:
            if not self.fail_open:
                raise
            self.logger.error("Error incrementing cached rate limit %s: %s", key, exc)

        durable = await self.persistence.increment_rate_counter(user_id, window_start(now))
        count = cached if cached is not None else durable
        self.logger.info(
            "Rate limit incremented for user %s: %d/%d", user_id, count, self._limit(limit)
        )
        return count

    async def next_available_slot(self, user_id: int, limit: int | None = None) -> int:
        """Return the epoch second at which the user may send again.

        Now when the quota is not exhausted, otherwise the start of the next
        hour window.
        """
        now = time.time()
        count = await self.get_count(user_id)
        if count < self._limit(limit):
            return int(now)
        return window_start(now) + WINDOW_SECONDS

    async def rebuild_from_durable_store(self) -> int:
        """Prime Redis with the durable counters of the current window.

        Returns:
            Number of counters restored.
        """
        now = time.time()
        hour_window = window_start(now)
        rows = await self.persistence.list_rate_counters(hour_window)
        try:
            for row in rows:
                key = window_key(row["user_id"], now)
                await self.redis.set(key, int(row["email_count"]), ex=CACHE_TTL_SECONDS)
        except RedisError as exc:
            if not self.fail_open:
                raise
            self.logger.error("Error initializing rate limiting from database: %s", exc)
            return 0
        self.logger.info("Initialized rate limiting from database: %d entries", len(rows))
        return len(rows)
