import asyncio
import time
from datetime import datetime, timezone

import pytest

from email_scheduler.core import EmailSchedulerCore
from email_scheduler.persistence import Persistence
from email_scheduler.rate_limit import window_key, window_start


class DummyTransport:
    def __init__(self, reachable=True):
        self.sent = []
        self.reachable = reachable
        self.verified = 0
        self.cleaned = 0
        self.closed = False

    async def send(self, to, subject, body):
        self.sent.append(to)

    async def verify(self):
        self.verified += 1
        return self.reachable

    async def cleanup(self):
        self.cleaned += 1

    async def close(self):
        self.closed = True


async def make_core(tmp_path, redis, transport=None, **kwargs):
    options = dict(
        min_delay_between_emails_ms=0,
        worker_concurrency=2,
        poll_interval=0.01,
        cleanup_interval=None,
    )
    options.update(kwargs)
    return EmailSchedulerCore(
        persistence=Persistence(str(tmp_path / "core.db")),
        redis=redis,
        transport=transport or DummyTransport(),
        **options,
    )


def campaign_request(recipients):
    return {
        "subject": "Hello",
        "body": "Body",
        "recipients": recipients,
        "start_time": datetime.now(timezone.utc),
        "delay_between_emails_ms": 0,
        "hourly_limit": 100,
    }


async def wait_until(predicate, timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


@pytest.mark.asyncio
async def test_core_schedules_and_delivers_campaign(tmp_path, redis):
    transport = DummyTransport()
    core = await make_core(tmp_path, redis, transport)
    await core.start()
    try:
        campaign = await core.create_campaign(5, campaign_request(["a@x.io", "b@x.io"]))

        async def delivered():
            stats = await core.get_campaign_stats(5)
            return stats["sent"] == 2

        await wait_until(delivered)
    finally:
        await core.drain_and_close()

    assert transport.verified == 1
    assert sorted(transport.sent) == ["a@x.io", "b@x.io"]
    assert transport.closed is True
    assert redis.closed is True

    stored = await core.get_campaign(campaign["id"], 5)
    assert stored["status"] == "completed"
    assert len(stored["emails"]) == 2
    assert await core.get_campaign(campaign["id"], 6) is None
    assert [c["id"] for c in await core.list_campaigns(5)] == [campaign["id"]]
    assert await core.list_scheduled_emails(5) == []
    assert len(await core.list_sent_or_failed_emails(5)) == 2
    assert b"es_emails_sent_total 2.0" in core.metrics.generate_latest()


@pytest.mark.asyncio
async def test_start_rebuilds_rate_state(tmp_path, redis):
    core = await make_core(tmp_path, redis)
    await core.persistence.init_db()
    now = time.time()
    await core.persistence.increment_rate_counter(3, window_start(now))
    await core.persistence.increment_rate_counter(3, window_start(now))

    await core.start()
    await core.stop()

    assert redis.strings[window_key(3, now)] == "2"


@pytest.mark.asyncio
async def test_start_tolerates_unreachable_transport(tmp_path, redis):
    transport = DummyTransport(reachable=False)
    core = await make_core(tmp_path, redis, transport)
    await core.start()
    assert core.pool.running
    await core.stop()
    assert not core.pool.running
    assert transport.closed is False


@pytest.mark.asyncio
async def test_cleanup_loop_runs_transport_cleanup(tmp_path, redis):
    transport = DummyTransport()
    core = await make_core(tmp_path, redis, transport, cleanup_interval=0.01)
    await core.start()
    await asyncio.sleep(0.05)
    await core.stop()
    assert transport.cleaned >= 1
