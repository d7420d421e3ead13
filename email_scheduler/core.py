"""Service object wiring the scheduler, the rate tracker, the queue and the workers."""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from redis.asyncio import Redis

from .campaigns import CampaignScheduler
from .delay_queue import DelayQueue
from .logger import get_logger
from .persistence import Persistence
from .prometheus import SchedulerMetrics
from .rate_limit import RateLimiter
from .worker import EmailWorker, WorkerPool


class EmailSchedulerCore:
    """Coordinate campaign scheduling, rate limiting, persistence and delivery.

    The durable store, the Redis client and the mail transport are built by the
    caller and injected here; the core owns only the components built on top
    of them.
    """

    def __init__(
        self,
        *,
        persistence: Persistence,
        redis: Redis,
        transport,
        logger=None,
        metrics: SchedulerMetrics | None = None,
        max_emails_per_hour: int = 200,
        min_delay_between_emails_ms: int = 2000,
        worker_concurrency: int = 5,
        fail_open: bool = True,
        queue_name: str = "email-queue",
        queue_attempts: int = 3,
        queue_backoff_ms: int = 5000,
        queue_max_jobs_per_window: int | None = None,
        queue_window_seconds: int = 3600,
        poll_interval: float = 0.5,
        shutdown_timeout: float = 30.0,
        cleanup_interval: float | None = 150,
    ):
        """Prepare the runtime collaborators."""
        self.logger = logger or get_logger()
        self.persistence = persistence
        self.redis = redis
        self.transport = transport
        self.metrics = metrics or SchedulerMetrics()

        self.rate_limiter = RateLimiter(
            persistence,
            redis,
            max_emails_per_hour=max_emails_per_hour,
            fail_open=fail_open,
        )
        self.queue = DelayQueue(
            redis,
            name=queue_name,
            attempts=queue_attempts,
            backoff_ms=queue_backoff_ms,
            max_jobs_per_window=(
                queue_max_jobs_per_window if queue_max_jobs_per_window is not None else max_emails_per_hour
            ),
            window_seconds=queue_window_seconds,
        )
        self.scheduler = CampaignScheduler(persistence, self.queue, metrics=self.metrics)
        self.worker = EmailWorker(
            persistence,
            redis,
            self.rate_limiter,
            transport,
            min_delay_between_emails_ms=min_delay_between_emails_ms,
            metrics=self.metrics,
        )
        self.pool = WorkerPool(
            self.queue,
            self.worker,
            concurrency=worker_concurrency,
            poll_interval=poll_interval,
            shutdown_timeout=shutdown_timeout,
            metrics=self.metrics,
        )

        self._cleanup_interval = cleanup_interval
        self._stop = asyncio.Event()
        self._task_cleanup: Optional[asyncio.Task] = None

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Create the schema and check the relay."""
        await self.persistence.init_db()
        if not await self.transport.verify():
            self.logger.warning("Mail transport not reachable at startup, sends will be retried")

    async def rebuild_rate_state_on_restart(self) -> int:
        """Restore the Redis counters of the current hour from the durable store."""
        return await self.rate_limiter.rebuild_from_durable_store()

    async def start_worker_pool(self) -> None:
        await self.pool.start()

    async def start(self) -> None:
        """Initialise storage, restore rate state and start the dispatch workers."""
        self.logger.debug("Starting EmailSchedulerCore...")
        await self.init()
        await self.rebuild_rate_state_on_restart()
        await self.start_worker_pool()
        self._stop.clear()
        if self._cleanup_interval:
            self._task_cleanup = asyncio.create_task(self._cleanup_loop(), name="smtp-cleanup-loop")
        self.logger.info("Email scheduler started")

    async def stop(self) -> None:
        """Stop the workers, letting in-flight jobs finish."""
        self._stop.set()
        await self.pool.stop()
        if self._task_cleanup is not None:
            self._task_cleanup.cancel()
            await asyncio.gather(self._task_cleanup, return_exceptions=True)
            self._task_cleanup = None

    async def drain_and_close(self) -> None:
        """Stop the workers, then release the transport and the Redis client."""
        await self.stop()
        await self.transport.close()
        await self.redis.aclose()
        self.logger.info("Email scheduler stopped")

    async def _cleanup_loop(self) -> None:
        """Background coroutine that keeps pooled relay connections healthy."""
        while not self._stop.is_set():
            await asyncio.sleep(self._cleanup_interval)
            await self.transport.cleanup()

    # ----------------------------------------------------------------- service API
    async def create_campaign(self, user_id: int, request: dict[str, Any]) -> dict[str, Any]:
        campaign = await self.scheduler.create_campaign(user_id, request)
        self.pool.wake()
        return campaign

    async def list_campaigns(self, user_id: int) -> list[dict[str, Any]]:
        return await self.scheduler.list_campaigns(user_id)

    async def get_campaign(self, campaign_id: int, user_id: int) -> dict[str, Any] | None:
        """Return an owned campaign with its emails, ``None`` when not visible."""
        campaign = await self.scheduler.get_campaign(campaign_id, user_id)
        if campaign is None:
            return None
        campaign["emails"] = await self.scheduler.list_campaign_emails(campaign_id, user_id) or []
        return campaign

    async def list_scheduled_emails(self, user_id: int) -> list[dict[str, Any]]:
        return await self.scheduler.list_scheduled_emails(user_id)

    async def list_sent_or_failed_emails(self, user_id: int) -> list[dict[str, Any]]:
        return await self.scheduler.list_sent_or_failed_emails(user_id)

    async def get_campaign_stats(self, user_id: int) -> dict[str, int]:
        return await self.scheduler.get_campaign_stats(user_id)
