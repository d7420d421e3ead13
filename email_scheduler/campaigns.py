"""Campaign creation and owner-scoped campaign queries."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from .delay_queue import DelayQueue
from .logger import get_logger
from .persistence import Persistence


class CampaignValidationError(ValueError):
    """Raised when a campaign request cannot be materialized."""


def job_id_for(email_id: int) -> str:
    """Return the delay-queue identity of a scheduled email."""
    return f"email-{email_id}"


def to_epoch_ms(value: Any) -> int:
    """Coerce a datetime, ISO 8601 string or epoch milliseconds into epoch milliseconds.

    Naive datetimes and strings without offset are taken as UTC.
    """
    if isinstance(value, bool):
        raise CampaignValidationError(f"Invalid start time: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError as exc:
            raise CampaignValidationError(f"Invalid start time: {value!r}") from exc
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    raise CampaignValidationError(f"Invalid start time: {value!r}")


class CampaignScheduler:
    """Turn a campaign request into one delayed job per recipient.

    The campaign row, every email row and every job id write-back happen in a
    single store transaction. Queue writes cannot be rolled back, so a job can
    be claimed before its email row commits, and a failed campaign can leave
    jobs whose row never commits. Workers report both as ``not_found`` and the
    pool retries them until the attempts run out.
    """

    def __init__(self, persistence: Persistence, queue: DelayQueue, *, metrics=None, logger=None):
        self.persistence = persistence
        self.queue = queue
        self.metrics = metrics
        self.logger = logger or get_logger("CampaignScheduler")

    @staticmethod
    def _normalise_recipients(recipients: Any) -> list[str]:
        if not recipients:
            raise CampaignValidationError("No recipients provided")
        if isinstance(recipients, str):
            raise CampaignValidationError("Recipients must be a list")
        cleaned = [str(r).strip() for r in recipients]
        if any(not r for r in cleaned):
            raise CampaignValidationError("Recipients must not be blank")
        seen: set[str] = set()
        duplicates: list[str] = []
        for recipient in cleaned:
            if recipient in seen:
                duplicates.append(recipient)
            seen.add(recipient)
        if duplicates:
            raise CampaignValidationError(f"Duplicate recipients: {', '.join(sorted(set(duplicates)))}")
        return cleaned

    async def create_campaign(self, user_id: int, request: dict[str, Any]) -> dict[str, Any]:
        """Persist a campaign and enqueue one job per recipient.

        Args:
            user_id: Owner of the campaign and key of its hourly quota.
            request: ``subject``, ``body``, ``recipients``, ``start_time``,
                ``delay_between_emails_ms`` and ``hourly_limit``.

        Returns:
            The stored campaign, with an ``emails`` list holding each
            scheduled email and its queue job id.

        Raises:
            CampaignValidationError: Empty or duplicated recipient list, or an
                unreadable start time. Nothing is persisted.
        """
        recipients = self._normalise_recipients(request.get("recipients"))
        start_ms = to_epoch_ms(request.get("start_time"))
        delay_ms = int(request.get("delay_between_emails_ms") or 0)
        if delay_ms < 0:
            raise CampaignValidationError("Delay between emails must not be negative")
        hourly_limit = int(request.get("hourly_limit") or 0)
        subject = request["subject"]
        body = request["body"]

        emails: list[dict[str, Any]] = []
        try:
            async with self.persistence.transaction() as db:
                campaign_id = await self.persistence.insert_campaign(
                    {
                        "user_id": user_id,
                        "subject": subject,
                        "body": body,
                        "start_time": start_ms,
                        "delay_between_emails_ms": delay_ms,
                        "hourly_limit": hourly_limit,
                        "total_emails": len(recipients),
                    },
                    db=db,
                )

                for i, recipient in enumerate(recipients):
                    send_time = start_ms + i * delay_ms
                    email_id = await self.persistence.insert_email(
                        {
                            "campaign_id": campaign_id,
                            "user_id": user_id,
                            "recipient_email": recipient,
                            "subject": subject,
                            "body": body,
                            "scheduled_time": send_time,
                        },
                        db=db,
                    )
                    job_id = await self.queue.schedule(
                        {
                            "email_id": email_id,
                            "user_id": user_id,
                            "campaign_id": campaign_id,
                            "recipient_email": recipient,
                            "subject": subject,
                            "body": body,
                            "scheduled_time": send_time,
                            "hourly_limit": hourly_limit,
                        },
                        send_time,
                        job_id_for(email_id),
                    )
                    await self.persistence.set_email_job_id(email_id, job_id, db=db)
                    emails.append(
                        {
                            "id": email_id,
                            "recipient_email": recipient,
                            "scheduled_time": send_time,
                            "status": "scheduled",
                            "job_id": job_id,
                        }
                    )

                await self.persistence.set_campaign_status(campaign_id, "in_progress", db=db)
        except Exception as exc:
            self.logger.error("Error creating campaign for user %s: %s", user_id, exc)
            raise

        self.logger.info("Campaign created: id=%s, emails=%d", campaign_id, len(recipients))
        if self.metrics is not None:
            self.metrics.inc_scheduled(len(recipients))

        campaign = await self.persistence.get_campaign(campaign_id)
        campaign["emails"] = emails
        return campaign

    async def list_campaigns(self, user_id: int) -> list[dict[str, Any]]:
        return await self.persistence.list_campaigns(user_id)

    async def get_campaign(self, campaign_id: int, user_id: int) -> dict[str, Any] | None:
        """Return the campaign only when it belongs to ``user_id``."""
        return await self.persistence.get_campaign(campaign_id, user_id)

    async def list_campaign_emails(self, campaign_id: int, user_id: int) -> list[dict[str, Any]] | None:
        """Return the emails of an owned campaign, ``None`` when the campaign is not visible."""
        if await self.persistence.get_campaign(campaign_id, user_id) is None:
            return None
        return await self.persistence.list_campaign_emails(campaign_id)

    async def list_scheduled_emails(self, user_id: int) -> list[dict[str, Any]]:
        return await self.persistence.list_pending_emails(user_id)

    async def list_sent_or_failed_emails(self, user_id: int) -> list[dict[str, Any]]:
        return await self.persistence.list_finished_emails(user_id)

    async def get_campaign_stats(self, user_id: int) -> dict[str, int]:
        """Return email counts of a user: total, sent, failed, scheduled, queued."""
        counts = await self.persistence.count_emails_by_status(user_id)
        return {
            "total": sum(counts.values()),
            "sent": counts["sent"],
            "failed": counts["failed"],
            "scheduled": counts["scheduled"],
            "queued": counts["queued"],
        }
