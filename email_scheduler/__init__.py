"""Campaign email scheduler with per-user hourly quotas.

The package turns a campaign (one subject/body, many recipients) into one
delayed job per recipient, then dispatches those jobs from a pool of asyncio
workers that guarantee at most one send per scheduled email:

- Durable campaign and email records in SQLite (aiosqlite)
- A Redis delay queue with deterministic job identities
- Fixed hour-window rate limiting mirrored in Redis and SQLite
- SMTP delivery through aiosmtplib
- Prometheus metrics and a small FastAPI surface

Example:
    Wiring the service by hand::

        from email_scheduler.core import EmailSchedulerCore

        core = EmailSchedulerCore(persistence=..., redis=..., transport=...)
        await core.start()
        campaign = await core.create_campaign(42, {...})
        await core.stop()
"""
