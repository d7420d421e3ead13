"""Dispatch workers: per-email state machine and the asyncio worker pool."""

from __future__ import annotations

import asyncio
import time
from typing import Any

import aiosqlite
from redis.asyncio import Redis
from redis.exceptions import RedisError

from .delay_queue import DelayQueue, Job
from .logger import get_logger
from .persistence import Persistence
from .rate_limit import RateLimiter

PROCESSING_LOCK_TTL = 300


def processing_key(email_id: int) -> str:
    """Return the Redis key of the processing lock of one email."""
    return f"processing:email:{email_id}"


class EmailWorker:
    """Process one delivered job: lock, check, send, record.

    Outcomes returned by :meth:`process`:

    - ``already_processing``: another worker holds the email lock.
    - ``not_found``: the email row is not visible. The row may belong to a
      campaign whose transaction has not committed yet, so the pool retries
      the job with backoff; true orphans end in the failed set.
    - ``already_sent``: the email was delivered by an earlier job run.
    - ``rescheduled``: the owner is over quota; ``retry_at_ms`` is the new
      send time already stored on the email.
    - ``sent``: the relay accepted the message.

    A transport failure is recorded on the email and the campaign, then
    re-raised for the queue retry policy.
    """

    def __init__(
        self,
        persistence: Persistence,
        redis: Redis,
        rate_limiter: RateLimiter,
        transport,
        *,
        min_delay_between_emails_ms: int = 2000,
        lock_ttl: int = PROCESSING_LOCK_TTL,
        metrics=None,
        logger=None,
    ):
        self.persistence = persistence
        self.redis = redis
        self.rate_limiter = rate_limiter
        self.transport = transport
        self.min_delay_between_emails_ms = max(0, int(min_delay_between_emails_ms))
        self.lock_ttl = int(lock_ttl)
        self.metrics = metrics
        self.logger = logger or get_logger("EmailWorker")

    def _skip(self, email_id: int, reason: str) -> dict[str, Any]:
        if self.metrics is not None:
            self.metrics.inc_skipped(reason)
        return {"id": email_id, "status": reason}

    async def process(self, job: Job) -> dict[str, Any]:
        email_id = int(job.data["email_id"])
        self.logger.info(
            "Processing email job: emailId=%s, recipient=%s", email_id, job.data.get("recipient_email")
        )

        key = processing_key(email_id)
        acquired = await self.redis.set(key, "1", nx=True, ex=self.lock_ttl)
        if not acquired:
            self.logger.warning("Email %s is already being processed, skipping", email_id)
            return self._skip(email_id, "already_processing")

        try:
            return await self._process_locked(email_id, job)
        finally:
            try:
                await self.redis.delete(key)
            except RedisError as exc:
                self.logger.error("Could not release processing lock %s, left to expire: %s", key, exc)

    async def _process_locked(self, email_id: int, job: Job) -> dict[str, Any]:
        email = await self.persistence.get_email(email_id)
        if email is None:
            self.logger.warning("Email %s not found in database", email_id)
            return self._skip(email_id, "not_found")
        if email["status"] == "sent":
            self.logger.info("Email %s already sent, skipping", email_id)
            return self._skip(email_id, "already_sent")

        user_id = email["user_id"]
        limit = job.data.get("hourly_limit")
        if not await self.rate_limiter.check_allowed(user_id, limit):
            slot = await self.rate_limiter.next_available_slot(user_id, limit)
            retry_at_ms = max(slot * 1000, int(email["scheduled_time"]) + 1)
            await self.persistence.reschedule_email(email_id, retry_at_ms)
            if self.metrics is not None:
                self.metrics.inc_rescheduled()
            self.logger.warning(
                "Rate limit exceeded for user %s, rescheduling email %s to %d", user_id, email_id, retry_at_ms
            )
            return {"id": email_id, "status": "rescheduled", "retry_at_ms": retry_at_ms}

        if self.min_delay_between_emails_ms:
            await asyncio.sleep(self.min_delay_between_emails_ms / 1000)

        await self.persistence.mark_email_queued(email_id)
        try:
            await self.transport.send(email["recipient_email"], email["subject"], email["body"])
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            async with self.persistence.transaction() as db:
                await self.persistence.mark_email_failed(email_id, error, db=db)
                await self.persistence.record_email_outcome(
                    email["campaign_id"], sent=False, previous_status=email["status"], db=db
                )
            if self.metrics is not None:
                self.metrics.inc_failed()
            self.logger.error("Error processing email %s: %s", email_id, error)
            raise

        # Row status and campaign counters commit together.
        sent_at = int(time.time() * 1000)
        async with self.persistence.transaction() as db:
            await self.persistence.mark_email_sent(email_id, sent_at, db=db)
            await self.persistence.record_email_outcome(
                email["campaign_id"], sent=True, previous_status=email["status"], db=db
            )
        try:
            await self.rate_limiter.increment(user_id, limit)
        except (RedisError, aiosqlite.Error) as exc:
            self.logger.error(
                "Email %s sent but not counted against the quota of user %s: %s", email_id, user_id, exc
            )
        if self.metrics is not None:
            self.metrics.inc_sent()
        self.logger.info("Email sent successfully: emailId=%s", email_id)
        return {"id": email_id, "status": "sent", "sent_at": sent_at}


class WorkerPool:
    """Run ``concurrency`` asyncio workers pulling due jobs from the delay queue."""

    def __init__(
        self,
        queue: DelayQueue,
        worker: EmailWorker,
        *,
        concurrency: int = 5,
        poll_interval: float = 0.5,
        shutdown_timeout: float = 30.0,
        metrics=None,
        logger=None,
    ):
        self.queue = queue
        self.worker = worker
        self.concurrency = max(1, int(concurrency))
        self.poll_interval = max(0.01, float(poll_interval))
        self.shutdown_timeout = shutdown_timeout
        self.metrics = metrics
        self.logger = logger or get_logger("WorkerPool")
        self._stop = asyncio.Event()
        self._wake = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        """Spawn the worker tasks."""
        if self.running:
            return
        self._stop.clear()
        self._wake.clear()
        self._tasks = [
            asyncio.create_task(self._run(index), name=f"email-worker-{index}")
            for index in range(self.concurrency)
        ]
        self.logger.info("Email worker pool started with concurrency %d", self.concurrency)

    async def stop(self) -> None:
        """Stop claiming jobs and let in-flight jobs finish within ``shutdown_timeout``."""
        if not self._tasks:
            return
        self._stop.set()
        self._wake.set()
        _, pending = await asyncio.wait(self._tasks, timeout=self.shutdown_timeout)
        for task in pending:
            task.cancel()
        if pending:
            self.logger.warning("Cancelled %d workers still busy after shutdown timeout", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        self.logger.info("Email worker pool stopped")

    def wake(self) -> None:
        """Make idle workers poll the queue immediately."""
        self._wake.set()

    async def _wait(self, timeout: float) -> None:
        if self._stop.is_set():
            return
        try:
            async with asyncio.timeout(max(0.0, timeout)):
                await self._wake.wait()
        except asyncio.TimeoutError:
            return
        if not self._stop.is_set():
            self._wake.clear()

    async def _run(self, index: int) -> None:
        while not self._stop.is_set():
            try:
                processed = await self.run_once()
            except Exception as exc:
                self.logger.exception("Unhandled error in email worker %d: %s", index, exc)
                processed = False
            if not processed:
                await self._wait(self.poll_interval)

    async def run_once(self) -> bool:
        """Claim and handle at most one due job. Returns ``True`` when a job was handled."""
        wait = await self.queue.limiter_wait()
        if wait > 0:
            self.logger.warning("Queue throughput ceiling reached, pausing %.0fs", wait)
            await self._wait(wait)
            return False

        job = await self.queue.claim_due()
        if job is None:
            await self.queue.requeue_stalled()
            if self.metrics is not None:
                counts = await self.queue.counts()
                self.metrics.set_delayed(counts["delayed"])
            return False

        await self.queue.record_processed()
        await self.handle(job)
        return True

    async def handle(self, job: Job) -> dict[str, Any] | None:
        """Run the worker on ``job`` and settle the job in the queue."""
        try:
            result = await self.worker.process(job)
        except Exception as exc:
            await self.queue.fail(job, exc)
            return None

        if result["status"] == "rescheduled":
            await self.queue.reschedule(job, result["retry_at_ms"])
        elif result["status"] == "not_found":
            await self.queue.fail(job, f"Email {result['id']} not found")
        else:
            await self.queue.complete(job)
            self.logger.debug("Job %s completed (%s)", job.id, result["status"])
        return result
