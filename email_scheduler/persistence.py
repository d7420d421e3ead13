"""SQLite backed persistence for campaigns, scheduled emails and rate counters."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, Sequence

import aiosqlite

CAMPAIGN_STATUSES = ("pending", "in_progress", "completed", "failed")
EMAIL_STATUSES = ("scheduled", "queued", "sent", "failed")


class Persistence:
    """Durable job store used by the scheduler, the workers and the rate tracker.

    Every public method opens its own connection and commits on success. Write
    methods also accept ``db``: a connection obtained from :meth:`transaction`,
    in which case the statement joins that transaction and nothing is committed
    until the transaction block exits.
    """

    def __init__(self, db_path: str = "/data/email_scheduler.db"):
        """Persist data to the given database path."""
        self.db_path = db_path or ":memory:"

    async def _open(self) -> aiosqlite.Connection:
        db = await aiosqlite.connect(self.db_path)
        await db.execute("PRAGMA foreign_keys = ON")
        return db

    @asynccontextmanager
    async def _connection(self, db: aiosqlite.Connection | None = None) -> AsyncIterator[aiosqlite.Connection]:
        if db is not None:
            yield db
            return
        conn = await self._open()
        try:
            yield conn
            await conn.commit()
        finally:
            await conn.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a multi-statement unit of work: commit on success, roll back on error."""
        conn = await self._open()
        try:
            await conn.execute("BEGIN")
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()
        finally:
            await conn.close()

    async def init_db(self) -> None:
        """Create the database schema."""
        async with self._connection() as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS email_campaigns (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    subject TEXT NOT NULL,
                    body TEXT NOT NULL,
                    start_time INTEGER NOT NULL,
                    delay_between_emails_ms INTEGER NOT NULL,
                    hourly_limit INTEGER NOT NULL,
                    total_emails INTEGER NOT NULL,
                    sent_count INTEGER NOT NULL DEFAULT 0,
                    failed_count INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'in_progress', 'completed', 'failed')),
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_campaigns_user ON email_campaigns(user_id)"
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS scheduled_emails (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    campaign_id INTEGER NOT NULL
                        REFERENCES email_campaigns(id) ON DELETE CASCADE,
                    user_id INTEGER NOT NULL,
                    recipient_email TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    body TEXT NOT NULL,
                    scheduled_time INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'scheduled'
                        CHECK (status IN ('scheduled', 'queued', 'sent', 'failed')),
                    job_id TEXT,
                    sent_at INTEGER,
                    error_message TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (campaign_id, recipient_email)
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_emails_user_status ON scheduled_emails(user_id, status)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_emails_job ON scheduled_emails(job_id)"
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS rate_limit_tracking (
                    user_id INTEGER NOT NULL,
                    hour_window INTEGER NOT NULL,
                    email_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (user_id, hour_window)
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_rate_window ON rate_limit_tracking(hour_window)"
            )

    @staticmethod
    def _rows(cursor_rows: Iterable[Sequence[Any]], description: Sequence[Sequence[Any]]) -> list[dict[str, Any]]:
        cols = [c[0] for c in description]
        return [dict(zip(cols, row)) for row in cursor_rows]

    async def _fetch_all(self, query: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        async with self._connection() as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                return self._rows(rows, cur.description)

    async def _fetch_one(self, query: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        rows = await self._fetch_all(query, params)
        return rows[0] if rows else None

    # Campaigns ----------------------------------------------------------------
    async def insert_campaign(self, campaign: dict[str, Any], *, db: aiosqlite.Connection | None = None) -> int:
        """Insert a campaign in ``pending`` state and return its id."""
        async with self._connection(db) as conn:
            cursor = await conn.execute(
                """
                INSERT INTO email_campaigns
                (user_id, subject, body, start_time, delay_between_emails_ms, hourly_limit,
                 total_emails, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'pending')
                """,
                (
                    campaign["user_id"],
                    campaign["subject"],
                    campaign["body"],
                    int(campaign["start_time"]),
                    int(campaign["delay_between_emails_ms"]),
                    int(campaign["hourly_limit"]),
                    int(campaign["total_emails"]),
                ),
            )
            return cursor.lastrowid

    async def set_campaign_status(
        self, campaign_id: int, status: str, *, db: aiosqlite.Connection | None = None
    ) -> None:
        """Force the status of a campaign."""
        if status not in CAMPAIGN_STATUSES:
            raise ValueError(f"Unknown campaign status '{status}'")
        async with self._connection(db) as conn:
            await conn.execute(
                "UPDATE email_campaigns SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (status, campaign_id),
            )

    async def get_campaign(self, campaign_id: int, user_id: int | None = None) -> dict[str, Any] | None:
        """Return a campaign, optionally only when it belongs to ``user_id``."""
        if user_id is None:
            return await self._fetch_one("SELECT * FROM email_campaigns WHERE id = ?", (campaign_id,))
        return await self._fetch_one(
            "SELECT * FROM email_campaigns WHERE id = ? AND user_id = ?",
            (campaign_id, user_id),
        )

    async def list_campaigns(self, user_id: int) -> list[dict[str, Any]]:
        """Return the campaigns of a user, newest first."""
        return await self._fetch_all(
            "SELECT * FROM email_campaigns WHERE user_id = ? ORDER BY created_at DESC, id DESC",
            (user_id,),
        )

    async def record_email_outcome(
        self,
        campaign_id: int,
        *,
        sent: bool,
        previous_status: str | None,
        db: aiosqlite.Connection | None = None,
    ) -> None:
        """Move the campaign counters after one email reached ``sent`` or ``failed``.

        An email that fails again after an earlier failure is counted once; an
        email that succeeds after an earlier failure moves from the failed
        counter to the sent counter, so ``sent_count + failed_count`` never
        exceeds ``total_emails``.
        """
        if sent and previous_status == "failed":
            assignments = "sent_count = sent_count + 1, failed_count = MAX(failed_count - 1, 0)"
        elif sent:
            assignments = "sent_count = sent_count + 1"
        elif previous_status == "failed":
            return
        else:
            assignments = "failed_count = failed_count + 1"
        async with self._connection(db) as conn:
            await conn.execute(
                f"UPDATE email_campaigns SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (campaign_id,),
            )
            await conn.execute(
                """
                UPDATE email_campaigns
                SET status = CASE WHEN sent_count = 0 THEN 'failed' ELSE 'completed' END,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                  AND status != 'pending'
                  AND sent_count + failed_count >= total_emails
                """,
                (campaign_id,),
            )

    # Scheduled emails ---------------------------------------------------------
    async def insert_email(self, email: dict[str, Any], *, db: aiosqlite.Connection | None = None) -> int:
        """Insert a scheduled email and return its id."""
        async with self._connection(db) as conn:
            cursor = await conn.execute(
                """
                INSERT INTO scheduled_emails
                (campaign_id, user_id, recipient_email, subject, body, scheduled_time, status)
                VALUES (?, ?, ?, ?, ?, ?, 'scheduled')
                """,
                (
                    email["campaign_id"],
                    email["user_id"],
                    email["recipient_email"],
                    email["subject"],
                    email["body"],
                    int(email["scheduled_time"]),
                ),
            )
            return cursor.lastrowid

    async def set_email_job_id(self, email_id: int, job_id: str, *, db: aiosqlite.Connection | None = None) -> None:
        async with self._connection(db) as conn:
            await conn.execute(
                "UPDATE scheduled_emails SET job_id = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (job_id, email_id),
            )

    async def get_email(self, email_id: int) -> dict[str, Any] | None:
        return await self._fetch_one("SELECT * FROM scheduled_emails WHERE id = ?", (email_id,))

    async def list_campaign_emails(self, campaign_id: int) -> list[dict[str, Any]]:
        """Return the emails of a campaign in assignment order."""
        return await self._fetch_all(
            "SELECT * FROM scheduled_emails WHERE campaign_id = ? ORDER BY scheduled_time ASC, id ASC",
            (campaign_id,),
        )

    async def list_pending_emails(self, user_id: int) -> list[dict[str, Any]]:
        """Return emails still waiting for delivery (``scheduled`` or ``queued``)."""
        return await self._fetch_all(
            """
            SELECT * FROM scheduled_emails
            WHERE user_id = ? AND status IN ('scheduled', 'queued')
            ORDER BY scheduled_time ASC, id ASC
            """,
            (user_id,),
        )

    async def list_finished_emails(self, user_id: int) -> list[dict[str, Any]]:
        """Return emails that reached ``sent`` or ``failed``, most recent first."""
        return await self._fetch_all(
            """
            SELECT * FROM scheduled_emails
            WHERE user_id = ? AND status IN ('sent', 'failed')
            ORDER BY sent_at IS NULL, sent_at DESC, updated_at DESC, id DESC
            """,
            (user_id,),
        )

    async def count_emails_by_status(self, user_id: int) -> dict[str, int]:
        rows = await self._fetch_all(
            "SELECT status, COUNT(*) AS cnt FROM scheduled_emails WHERE user_id = ? GROUP BY status",
            (user_id,),
        )
        counts = {status: 0 for status in EMAIL_STATUSES}
        for row in rows:
            counts[row["status"]] = int(row["cnt"])
        return counts

    async def reschedule_email(self, email_id: int, scheduled_time: int) -> None:
        """Put an email back to ``scheduled`` with a new send time."""
        async with self._connection() as db:
            await db.execute(
                """
                UPDATE scheduled_emails
                SET status = 'scheduled', scheduled_time = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status != 'sent'
                """,
                (int(scheduled_time), email_id),
            )

    async def mark_email_queued(self, email_id: int) -> None:
        async with self._connection() as db:
            await db.execute(
                """
                UPDATE scheduled_emails
                SET status = 'queued', updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status != 'sent'
                """,
                (email_id,),
            )

    async def mark_email_sent(
        self, email_id: int, sent_at: int, *, db: aiosqlite.Connection | None = None
    ) -> None:
        async with self._connection(db) as conn:
            await conn.execute(
                """
                UPDATE scheduled_emails
                SET status = 'sent', sent_at = ?, error_message = NULL,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (int(sent_at), email_id),
            )

    async def mark_email_failed(
        self, email_id: int, error: str, *, db: aiosqlite.Connection | None = None
    ) -> None:
        async with self._connection(db) as conn:
            await conn.execute(
                """
                UPDATE scheduled_emails
                SET status = 'failed', error_message = ?, attempts = attempts + 1,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (error, email_id),
            )

    # Rate counters ------------------------------------------------------------
    async def increment_rate_counter(self, user_id: int, hour_window: int) -> int:
        """Atomically add one send to ``(user_id, hour_window)`` and return the new count."""
        async with self._connection() as db:
            await db.execute(
                """
                INSERT INTO rate_limit_tracking (user_id, hour_window, email_count)
                VALUES (?, ?, 1)
                ON CONFLICT (user_id, hour_window) DO UPDATE SET
                    email_count = email_count + 1,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (user_id, hour_window),
            )
            async with db.execute(
                "SELECT email_count FROM rate_limit_tracking WHERE user_id = ? AND hour_window = ?",
                (user_id, hour_window),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def get_rate_counter(self, user_id: int, hour_window: int) -> int:
        row = await self._fetch_one(
            "SELECT email_count FROM rate_limit_tracking WHERE user_id = ? AND hour_window = ?",
            (user_id, hour_window),
        )
        return int(row["email_count"]) if row else 0

    async def list_rate_counters(self, hour_window: int) -> list[dict[str, Any]]:
        """Return ``user_id``/``email_count`` rows recorded for one hour window."""
        return await self._fetch_all(
            "SELECT user_id, email_count FROM rate_limit_tracking WHERE hour_window = ?",
            (hour_window,),
        )

