"""Settings loader: INI file with environment variable fallbacks."""

from __future__ import annotations

import configparser
import os
from pathlib import Path


def load_settings(config_path: str | os.PathLike | None = None) -> dict[str, object]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with ES_):
      ES_CONFIG - Path to config.ini file (default: config.ini)
      ES_LOG_LEVEL - Logging level (default: INFO)
      ES_DB_PATH - Database path (default: /data/email_scheduler.db)
      ES_REDIS_URL - Redis connection URL (default: redis://localhost:6379/0)
      ES_HOST - Server host (default: 0.0.0.0)
      ES_PORT - Server port (default: 8000)
      ES_API_TOKEN - API authentication token
      ES_SMTP_HOST, ES_SMTP_PORT, ES_SMTP_USER, ES_SMTP_PASSWORD - SMTP relay
      ES_SMTP_USE_TLS - Implicit TLS (default: port 465 only)
      ES_SMTP_SENDER - From address (default: the SMTP user)
      ES_MAX_EMAILS_PER_HOUR - Hourly quota per user (default: 200)
      ES_MIN_DELAY_BETWEEN_EMAILS_MS - Pause before each send (default: 2000)
      ES_WORKER_CONCURRENCY - Number of dispatch workers (default: 5)
      ES_RATE_LIMIT_FAIL_OPEN - Allow sends when Redis is down (default: True)
      ES_QUEUE_NAME - Delay queue key prefix (default: email-queue)
      ES_QUEUE_ATTEMPTS - Send attempts per email (default: 3)
      ES_QUEUE_BACKOFF_MS - Base retry backoff (default: 5000)
      ES_POLL_INTERVAL - Idle poll interval in seconds (default: 0.5)

    Config file sections/keys:
      [storage] db_path
      [redis] url
      [server] host, port, api_token
      [smtp] host, port, user, password, use_tls, sender
      [rate_limiting] max_emails_per_hour, min_delay_between_emails_ms, worker_concurrency, fail_open
      [queue] name, attempts, backoff_ms, poll_interval_seconds
      [logging] level
    """
    config_path = Path(config_path or os.getenv("ES_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return float(value)

    settings = {
        "db_path": get("storage", "db_path", os.getenv("ES_DB_PATH", "/data/email_scheduler.db")),
        "redis_url": get("redis", "url", os.getenv("ES_REDIS_URL", "redis://localhost:6379/0")),
        "http_host": get("server", "host", os.getenv("ES_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("ES_PORT"), default=8000),
        "api_token": get("server", "api_token", os.getenv("ES_API_TOKEN")),
        "smtp_host": get("smtp", "host", os.getenv("ES_SMTP_HOST", "localhost")),
        "smtp_port": get_int("smtp", "port", os.getenv("ES_SMTP_PORT"), default=587),
        "smtp_user": get("smtp", "user", os.getenv("ES_SMTP_USER")),
        "smtp_password": get("smtp", "password", os.getenv("ES_SMTP_PASSWORD")),
        "smtp_use_tls": get_bool("smtp", "use_tls", os.getenv("ES_SMTP_USE_TLS"), default=None),
        "smtp_sender": get("smtp", "sender", os.getenv("ES_SMTP_SENDER")),
        "max_emails_per_hour": get_int(
            "rate_limiting", "max_emails_per_hour", os.getenv("ES_MAX_EMAILS_PER_HOUR"), default=200
        ),
        "min_delay_between_emails_ms": get_int(
            "rate_limiting",
            "min_delay_between_emails_ms",
            os.getenv("ES_MIN_DELAY_BETWEEN_EMAILS_MS"),
            default=2000,
        ),
        "worker_concurrency": get_int(
            "rate_limiting", "worker_concurrency", os.getenv("ES_WORKER_CONCURRENCY"), default=5
        ),
        "fail_open": get_bool("rate_limiting", "fail_open", os.getenv("ES_RATE_LIMIT_FAIL_OPEN"), default=True),
        "queue_name": get("queue", "name", os.getenv("ES_QUEUE_NAME", "email-queue")),
        "queue_attempts": get_int("queue", "attempts", os.getenv("ES_QUEUE_ATTEMPTS"), default=3),
        "queue_backoff_ms": get_int("queue", "backoff_ms", os.getenv("ES_QUEUE_BACKOFF_MS"), default=5000),
        "poll_interval": get_float("queue", "poll_interval_seconds", os.getenv("ES_POLL_INTERVAL"), default=0.5),
        "log_level": get("logging", "level", os.getenv("ES_LOG_LEVEL", "INFO")),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    token = settings.get("api_token")
    if isinstance(token, str):
        token = token.strip() or None
    settings["api_token"] = token
    return settings
