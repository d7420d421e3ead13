"""SMTP mail transport used by the dispatch workers."""

from __future__ import annotations

import asyncio
import html
from email.message import EmailMessage

import aiosmtplib

from .logger import get_logger
from .smtp_pool import SMTPPool


class MailTransportError(RuntimeError):
    """Raised when the relay did not accept a message."""

    def __init__(self, reason: str, smtp_code: int | None = None):
        super().__init__(reason)
        self.reason = reason
        self.smtp_code = smtp_code


def build_message(sender: str | None, to: str, subject: str, body: str) -> EmailMessage:
    """Build a text message with an HTML alternative keeping line breaks."""
    msg = EmailMessage()
    if sender:
        msg["From"] = sender
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(body)
    msg.add_alternative(html.escape(body).replace("\n", "<br>"), subtype="html")
    return msg


class SmtpTransport:
    """Send-or-fail primitive over a pooled SMTP relay."""

    def __init__(self, pool: SMTPPool, *, sender: str | None = None, send_timeout: float = 30.0, logger=None):
        self.pool = pool
        self.sender = sender or pool.user
        self.send_timeout = send_timeout
        self.logger = logger or get_logger("SmtpTransport")

    async def send(self, to: str, subject: str, body: str) -> None:
        """Deliver one message to the relay.

        Raises:
            MailTransportError: The connection failed or the relay refused the
                message.
        """
        msg = build_message(self.sender, to, subject, body)
        try:
            smtp = await self.pool.get_connection()
            async with asyncio.timeout(self.send_timeout):
                await smtp.send_message(msg, sender=self.sender)
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            await self.pool.release_current()
            code = getattr(exc, "code", None)
            self.logger.error("Failed to send email to %s: %s", to, exc)
            raise MailTransportError(str(exc) or exc.__class__.__name__, code) from exc
        self.logger.info("Email sent to %s", to)

    async def verify(self) -> bool:
        """Check that the relay accepts a connection."""
        try:
            await self.pool.get_connection()
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            self.logger.error("SMTP connection verification failed: %s", exc)
            return False
        await self.pool.release_current()
        self.logger.info("SMTP connection verified")
        return True

    async def cleanup(self) -> None:
        """Drop idle or broken relay connections."""
        await self.pool.cleanup()

    async def close(self) -> None:
        await self.pool.close()
