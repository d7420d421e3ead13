"""Per-worker SMTP connection reuse for a single relay."""

from __future__ import annotations

import asyncio
import time

import aiosmtplib

from .logger import get_logger


class SMTPPool:
    """Keep one authenticated SMTP connection per worker task.

    Each dispatch worker is its own asyncio task, so keying connections by task
    lets a worker reuse its session across jobs without sharing it with a
    concurrent sender.
    """

    def __init__(
        self,
        host: str,
        port: int,
        user: str | None = None,
        password: str | None = None,
        *,
        use_tls: bool | None = None,
        start_tls: bool = False,
        ttl: int = 300,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = int(port)
        self.user = user or None
        self.password = password or None
        self.use_tls = (self.port == 465) if use_tls is None else bool(use_tls)
        self.start_tls = bool(start_tls) and not self.use_tls
        self.ttl = ttl
        self.timeout = timeout
        self.pool: dict[int, tuple[aiosmtplib.SMTP, float]] = {}
        self.lock = asyncio.Lock()
        self.logger = get_logger("SMTPPool")

    async def _connect(self) -> aiosmtplib.SMTP:
        """Open a new connection and authenticate when credentials are set."""
        smtp = aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            use_tls=self.use_tls,
            start_tls=self.start_tls,
            timeout=self.timeout,
        )

        async def _do_connect():
            await smtp.connect()
            if self.user and self.password:
                await smtp.login(self.user, self.password)

        await asyncio.wait_for(_do_connect(), timeout=self.timeout + 5)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            return False

    async def _discard(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            self.logger.debug("Ignoring error while closing SMTP connection: %s", exc)

    async def get_connection(self) -> aiosmtplib.SMTP:
        """Return the live connection bound to the calling task, opening one if needed."""
        task_id = id(asyncio.current_task())

        async with self.lock:
            entry = self.pool.get(task_id)

        if entry:
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[task_id] = (smtp, time.time())
                return smtp
            async with self.lock:
                self.pool.pop(task_id, None)
            await self._discard(smtp)

        smtp = await self._connect()
        async with self.lock:
            self.pool[task_id] = (smtp, time.time())
        return smtp

    async def release_current(self) -> None:
        """Drop the connection of the calling task, e.g. after a send error."""
        task_id = id(asyncio.current_task())
        async with self.lock:
            entry = self.pool.pop(task_id, None)
        if entry:
            await self._discard(entry[0])

    async def cleanup(self) -> None:
        """Close idle or broken connections still registered in the pool."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())

        expired: list[int] = []
        for task_id, (smtp, last_used) in items:
            if (now - last_used) > self.ttl or not await self._is_alive(smtp):
                expired.append(task_id)

        for task_id in expired:
            async with self.lock:
                entry = self.pool.pop(task_id, None)
            if entry:
                await self._discard(entry[0])

    async def close(self) -> None:
        """Close every pooled connection."""
        async with self.lock:
            items = list(self.pool.values())
            self.pool.clear()
        for smtp, _ in items:
            await self._discard(smtp)
