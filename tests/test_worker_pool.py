import asyncio
import time

import pytest

from email_scheduler.delay_queue import DelayQueue
from email_scheduler.worker import WorkerPool


class DummyWorker:
    def __init__(self, outcome="sent", block: asyncio.Event | None = None):
        self.processed = []
        self.outcome = outcome
        self.block = block

    async def process(self, job):
        if self.block is not None:
            await self.block.wait()
        self.processed.append(job.id)
        return {"id": job.data["email_id"], "status": self.outcome}


class DummyMetrics:
    def __init__(self):
        self.delayed = None

    def set_delayed(self, value):
        self.delayed = value


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_pool_processes_due_jobs_and_stops(redis):
    queue = DelayQueue(redis)
    worker = DummyWorker()
    metrics = DummyMetrics()
    pool = WorkerPool(queue, worker, concurrency=2, poll_interval=0.01, metrics=metrics)
    now_ms = int(time.time() * 1000)
    for i in range(3):
        await queue.schedule({"email_id": i}, now_ms - 10, f"email-{i}")
    await queue.schedule({"email_id": 9}, now_ms + 3_600_000, "email-9")

    await pool.start()
    assert pool.running
    await wait_until(lambda: len(worker.processed) == 3)
    await wait_until(lambda: metrics.delayed == 1)
    await pool.stop()

    assert sorted(worker.processed) == ["email-0", "email-1", "email-2"]
    assert not pool.running
    counts = await queue.counts()
    assert counts["completed"] == 3
    assert counts["delayed"] == 1


@pytest.mark.asyncio
async def test_pool_start_is_idempotent(redis):
    pool = WorkerPool(DelayQueue(redis), DummyWorker(), concurrency=3, poll_interval=0.01)
    await pool.start()
    tasks = list(pool._tasks)
    await pool.start()
    assert pool._tasks == tasks
    await pool.stop()


@pytest.mark.asyncio
async def test_pool_stop_cancels_jobs_past_shutdown_timeout(redis):
    queue = DelayQueue(redis)
    block = asyncio.Event()
    worker = DummyWorker(block=block)
    pool = WorkerPool(queue, worker, concurrency=1, poll_interval=0.01, shutdown_timeout=0.05)
    await queue.schedule({"email_id": 1}, int(time.time() * 1000) - 10, "email-1")

    await pool.start()
    await wait_until(lambda: redis.zsets.get(queue.active_key))
    await pool.stop()

    assert worker.processed == []
    assert not pool.running
    # The claim is left to expire and be requeued.
    assert await redis.zcard(queue.active_key) == 1


@pytest.mark.asyncio
async def test_pool_pauses_when_aggregate_ceiling_reached(redis):
    queue = DelayQueue(redis, max_jobs_per_window=1)
    worker = DummyWorker()
    pool = WorkerPool(queue, worker, concurrency=1, poll_interval=0.01)
    now_ms = int(time.time() * 1000)
    await queue.schedule({"email_id": 1}, now_ms - 10, "email-1")
    await queue.schedule({"email_id": 2}, now_ms - 10, "email-2")

    assert await pool.run_once() is True
    pool._stop.set()
    assert await pool.run_once() is False
    assert worker.processed == ["email-1"]


@pytest.mark.asyncio
async def test_run_once_requeues_stalled_claims_when_idle(redis):
    queue = DelayQueue(redis, visibility_timeout_ms=0)
    pool = WorkerPool(queue, DummyWorker(), concurrency=1)
    await queue.schedule({"email_id": 1}, int(time.time() * 1000) - 10, "email-1")
    await queue.claim_due()

    assert await pool.run_once() is False
    assert await queue.due_time("email-1") is not None
