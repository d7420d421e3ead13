import os
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from redis.asyncio import Redis

from email_scheduler.api import create_app
from email_scheduler.config_loader import load_settings
from email_scheduler.core import EmailSchedulerCore
from email_scheduler.persistence import Persistence
from email_scheduler.smtp_pool import SMTPPool
from email_scheduler.transport import SmtpTransport

# Configure logging level from environment
log_level = os.getenv("ES_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


def build_service(settings: dict[str, object]) -> EmailSchedulerCore:
    """Construct the clients from ``settings`` and inject them into the core."""
    persistence = Persistence(str(settings["db_path"]))
    redis = Redis.from_url(str(settings["redis_url"]), decode_responses=True)
    pool = SMTPPool(
        str(settings["smtp_host"]),
        int(settings["smtp_port"]),
        settings.get("smtp_user"),
        settings.get("smtp_password"),
        use_tls=settings.get("smtp_use_tls"),
        start_tls=not settings.get("smtp_use_tls") and int(settings["smtp_port"]) == 587,
    )
    transport = SmtpTransport(pool, sender=settings.get("smtp_sender"))
    return EmailSchedulerCore(
        persistence=persistence,
        redis=redis,
        transport=transport,
        max_emails_per_hour=int(settings["max_emails_per_hour"]),
        min_delay_between_emails_ms=int(settings["min_delay_between_emails_ms"]),
        worker_concurrency=int(settings["worker_concurrency"]),
        fail_open=bool(settings.get("fail_open")),
        queue_name=str(settings["queue_name"]),
        queue_attempts=int(settings["queue_attempts"]),
        queue_backoff_ms=int(settings["queue_backoff_ms"]),
        poll_interval=float(settings["poll_interval"]),
    )


if __name__ == "__main__":
    settings = load_settings()
    logging.getLogger().setLevel(getattr(logging, str(settings["log_level"]).upper(), logging.INFO))
    # Create service instance but don't start it yet - let uvicorn handle the event loop
    service = build_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        yield
        await service.drain_and_close()

    app = create_app(service, api_token=settings.get("api_token"), lifespan=lifespan)

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
