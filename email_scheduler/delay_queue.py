"""Redis delay queue with deterministic job identities.

Layout (``name`` defaults to ``email-queue``)::

    {name}:delayed    ZSET  job id -> epoch ms at which the job becomes due
    {name}:active     ZSET  job id -> epoch ms after which a claim is stale
    {name}:jobs       HASH  job id -> JSON record (data, attempts, target)
    {name}:completed  ZSET  job id -> completion epoch ms (capped)
    {name}:failed     ZSET  job id -> failure epoch ms (capped)
    {name}:limiter:N  STR   jobs processed in aggregate window N

A job id identifies one logical job for its whole life: scheduling an id that
already exists overwrites the record and the due time instead of adding a
second entry. Claiming moves the id from ``delayed`` to ``active`` in one
WATCH/MULTI transaction; only the caller whose transaction commits owns the
job, and a job is never outside both sets while it is live.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import WatchError

from .logger import get_logger


def _now_ms() -> int:
    return int(time.time() * 1000)


def _text(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


@dataclass
class Job:
    """One claimed unit of work."""

    id: str
    data: dict[str, Any]
    attempts_made: int = 0
    target_ms: int = 0
    failed_reason: str | None = None

    def to_record(self) -> str:
        return json.dumps(
            {
                "id": self.id,
                "data": self.data,
                "attempts_made": self.attempts_made,
                "target_ms": self.target_ms,
                "failed_reason": self.failed_reason,
            }
        )

    @classmethod
    def from_record(cls, raw: str | bytes) -> "Job":
        record = json.loads(_text(raw))
        return cls(
            id=record["id"],
            data=record.get("data") or {},
            attempts_made=int(record.get("attempts_made", 0)),
            target_ms=int(record.get("target_ms", 0)),
            failed_reason=record.get("failed_reason"),
        )


class DelayQueue:
    """Delayed job queue backed by Redis sorted sets.

    Args:
        redis: Shared Redis client.
        name: Prefix of every key used by the queue.
        attempts: Deliveries allowed per job before it is moved to ``failed``.
        backoff_ms: Base of the exponential retry delay after a failure.
        visibility_timeout_ms: How long a claim stays valid before the job is
            handed out again by :meth:`requeue_stalled`.
        remove_on_complete: Completed ids kept for inspection.
        remove_on_fail: Failed jobs kept for inspection.
        max_jobs_per_window: Aggregate ceiling of processed jobs per window;
            ``None`` disables the ceiling.
        window_seconds: Width of the aggregate window.
    """

    def __init__(
        self,
        redis: Redis,
        *,
        name: str = "email-queue",
        attempts: int = 3,
        backoff_ms: int = 5000,
        visibility_timeout_ms: int = 300_000,
        remove_on_complete: int = 1000,
        remove_on_fail: int = 5000,
        max_jobs_per_window: int | None = None,
        window_seconds: int = 3600,
        claim_batch: int = 10,
        logger=None,
    ):
        self.redis = redis
        self.name = name
        self.attempts = max(1, int(attempts))
        self.backoff_ms = max(0, int(backoff_ms))
        self.visibility_timeout_ms = int(visibility_timeout_ms)
        self.remove_on_complete = int(remove_on_complete)
        self.remove_on_fail = int(remove_on_fail)
        self.max_jobs_per_window = max_jobs_per_window
        self.window_seconds = max(1, int(window_seconds))
        self.claim_batch = max(1, int(claim_batch))
        self.logger = logger or get_logger("DelayQueue")

    @property
    def delayed_key(self) -> str:
        return f"{self.name}:delayed"

    @property
    def active_key(self) -> str:
        return f"{self.name}:active"

    @property
    def jobs_key(self) -> str:
        return f"{self.name}:jobs"

    @property
    def completed_key(self) -> str:
        return f"{self.name}:completed"

    @property
    def failed_key(self) -> str:
        return f"{self.name}:failed"

    def limiter_key(self, now_ms: int) -> str:
        return f"{self.name}:limiter:{now_ms // 1000 // self.window_seconds}"

    # ------------------------------------------------------------- producers
    async def schedule(self, data: dict[str, Any], target_ms: int, job_id: str) -> str:
        """Add a job that must not be delivered before ``target_ms``.

        Scheduling an id that is already known overwrites it, so retrying a
        partially completed producer never duplicates a job.
        """
        job = Job(id=job_id, data=data, target_ms=int(target_ms))
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self.jobs_key, job_id, job.to_record())
            pipe.zadd(self.delayed_key, {job_id: job.target_ms})
            await pipe.execute()
        delay = max(0, job.target_ms - _now_ms())
        self.logger.info("Job scheduled: jobId=%s, delay=%dms", job_id, delay)
        return job_id

    async def reschedule(self, job: Job, target_ms: int) -> None:
        """Hand a claimed job back under the same id with a new due time.

        Attempts are not consumed. Record, claim release and due time are
        written in one MULTI block, so the id has exactly one live entry.
        """
        job.target_ms = int(target_ms)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self.jobs_key, job.id, job.to_record())
            pipe.zrem(self.active_key, job.id)
            pipe.zadd(self.delayed_key, {job.id: job.target_ms})
            await pipe.execute()
        self.logger.info("Job %s rescheduled for %d", job.id, job.target_ms)

    # ------------------------------------------------------------- consumers
    async def _move(
        self, job_id: str, source: str, target: str, score: int, *, due_by: int | None = None
    ) -> bool:
        """Move ``job_id`` from ``source`` to ``target`` in one transaction.

        Returns ``False`` when the id is no longer in ``source``, is not due by
        ``due_by``, or ``source`` changed before the move committed.
        """
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(source)
                current = await pipe.zscore(source, job_id)
                if current is None or (due_by is not None and current > due_by):
                    return False
                pipe.multi()
                pipe.zrem(source, job_id)
                pipe.zadd(target, {job_id: score})
                await pipe.execute()
            except WatchError:
                return False
        return True

    async def claim_due(self, now_ms: int | None = None) -> Job | None:
        """Claim the earliest due job, or return ``None`` when nothing is due."""
        now_ms = _now_ms() if now_ms is None else int(now_ms)
        candidates = await self.redis.zrangebyscore(
            self.delayed_key, "-inf", now_ms, start=0, num=self.claim_batch
        )
        for candidate in candidates:
            job_id = _text(candidate)
            claimed = await self._move(
                job_id, self.delayed_key, self.active_key, now_ms + self.visibility_timeout_ms, due_by=now_ms
            )
            if not claimed:
                continue
            raw = await self.redis.hget(self.jobs_key, job_id)
            if raw is None:
                self.logger.warning("Job %s has no record, dropping it", job_id)
                await self.redis.zrem(self.active_key, job_id)
                continue
            return Job.from_record(raw)
        return None

    async def complete(self, job: Job) -> None:
        """Forget a job that finished."""
        now_ms = _now_ms()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.active_key, job.id)
            pipe.hdel(self.jobs_key, job.id)
            pipe.zadd(self.completed_key, {job.id: now_ms})
            pipe.zremrangebyrank(self.completed_key, 0, -(self.remove_on_complete + 1))
            await pipe.execute()

    async def fail(self, job: Job, error: BaseException | str) -> int | None:
        """Record a failed delivery and apply the retry policy.

        Returns:
            The retry delay in milliseconds, or ``None`` when the job ran out
            of attempts and was moved to the failed set.
        """
        now_ms = _now_ms()
        job.attempts_made += 1
        job.failed_reason = str(error)
        if job.attempts_made < self.attempts:
            delay = self.backoff_ms * 2 ** (job.attempts_made - 1)
            job.target_ms = now_ms + delay
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(self.jobs_key, job.id, job.to_record())
                pipe.zrem(self.active_key, job.id)
                pipe.zadd(self.delayed_key, {job.id: job.target_ms})
                await pipe.execute()
            self.logger.warning(
                "Job %s failed (attempt %d/%d), retrying in %dms: %s",
                job.id,
                job.attempts_made,
                self.attempts,
                delay,
                job.failed_reason,
            )
            return delay

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self.jobs_key, job.id, job.to_record())
            pipe.zrem(self.active_key, job.id)
            pipe.zadd(self.failed_key, {job.id: now_ms})
            await pipe.execute()
        await self._trim_failed()
        self.logger.error(
            "Job %s failed permanently after %d attempts: %s",
            job.id,
            job.attempts_made,
            job.failed_reason,
        )
        return None

    async def _trim_failed(self) -> None:
        overflow = await self.redis.zrange(self.failed_key, 0, -(self.remove_on_fail + 1))
        if not overflow:
            return
        ids = [_text(item) for item in overflow]
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.failed_key, *ids)
            pipe.hdel(self.jobs_key, *ids)
            await pipe.execute()

    async def requeue_stalled(self, now_ms: int | None = None) -> int:
        """Make jobs whose claim expired (crashed worker) due again.

        Returns:
            Number of jobs handed back to the delayed set.
        """
        now_ms = _now_ms() if now_ms is None else int(now_ms)
        stalled = await self.redis.zrangebyscore(self.active_key, "-inf", now_ms)
        requeued = 0
        for item in stalled:
            job_id = _text(item)
            if not await self._move(job_id, self.active_key, self.delayed_key, now_ms, due_by=now_ms):
                continue
            requeued += 1
        if requeued:
            self.logger.warning("Requeued %d stalled jobs", requeued)
        return requeued

    # ------------------------------------------------------- aggregate ceiling
    async def limiter_wait(self, now_ms: int | None = None) -> float:
        """Return seconds to wait before claiming again, 0 while under the ceiling."""
        if not self.max_jobs_per_window:
            return 0.0
        now_ms = _now_ms() if now_ms is None else int(now_ms)
        value = await self.redis.get(self.limiter_key(now_ms))
        if value is None or int(value) < self.max_jobs_per_window:
            return 0.0
        window_end_ms = (now_ms // 1000 // self.window_seconds + 1) * self.window_seconds * 1000
        return max(0.0, (window_end_ms - now_ms) / 1000)

    async def record_processed(self, now_ms: int | None = None) -> None:
        """Count one claimed job against the aggregate ceiling."""
        if not self.max_jobs_per_window:
            return
        now_ms = _now_ms() if now_ms is None else int(now_ms)
        key = self.limiter_key(now_ms)
        count = await self.redis.incr(key)
        if int(count) == 1:
            await self.redis.expire(key, self.window_seconds * 2)

    # ------------------------------------------------------------- inspection
    async def get_job(self, job_id: str) -> Job | None:
        raw = await self.redis.hget(self.jobs_key, job_id)
        return Job.from_record(raw) if raw is not None else None

    async def due_time(self, job_id: str) -> int | None:
        """Return the due time of a waiting job, ``None`` when it is not waiting."""
        score = await self.redis.zscore(self.delayed_key, job_id)
        return int(score) if score is not None else None

    async def counts(self) -> dict[str, int]:
        return {
            "delayed": int(await self.redis.zcard(self.delayed_key)),
            "active": int(await self.redis.zcard(self.active_key)),
            "completed": int(await self.redis.zcard(self.completed_key)),
            "failed": int(await self.redis.zcard(self.failed_key)),
        }
