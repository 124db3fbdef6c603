# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite-backed job store: the durable source of truth for every email.

Two tables are kept in a strict one-to-one relation:

- ``emails``: the immutable payload and the delivery status
  (``SCHEDULED -> SENDING -> SENT | FAILED``)
- ``email_jobs``: the dispatch engine's view of the same email
  (``QUEUED -> SENDING -> COMPLETED | ERROR``), the queue correlation id and
  the resolved campaign limits

``Email.status == SENT`` is irreversible: every status update is guarded so a
sent row is never modified again, which makes re-dispatching a sent job a
no-op.

Like the rest of the persistence code, every operation opens its own
aiosqlite connection, so the store is safe to share between worker tasks.

Example:
    Creating a batch and reading it back::

        store = JobStore("/data/mail_dispatch.db")
        await store.init_db()
        ids = await store.create_batch(
            "u1",
            [{"recipient": "a@example.com", "subject": "Hi", "body": "..."}],
            scheduled_at_ms=None,
            min_delay_ms=2000,
            hourly_limit=200,
        )
        email = await store.get(ids[0])
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import aiosqlite

from .models import EmailStatus, JobStatus, to_ms

# Columns a caller may set together with a status change
EMAIL_UPDATABLE_FIELDS = {"sent_at_ms", "error"}
JOB_UPDATABLE_FIELDS = {"external_job_id"}

_EMAIL_SELECT = """
    SELECT e.id, e.sender_id, e.recipient, e.subject, e.body, e.scheduled_at_ms,
           e.status, e.sent_at_ms, e.error, e.created_at_ms, e.updated_at_ms,
           j.status AS job_status, j.external_job_id, j.min_delay_ms, j.hourly_limit
    FROM emails e
    LEFT JOIN email_jobs j ON j.email_id = e.id
"""

_STALE_SELECT = """
    SELECT e.id, e.sender_id, e.recipient, e.scheduled_at_ms, e.created_at_ms,
           j.id AS job_seq, j.min_delay_ms, j.hourly_limit
    FROM emails e
    JOIN email_jobs j ON j.email_id = e.id
"""


class JobStore:
    """Async SQLite persistence for Email and EmailJob rows.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str = "/data/mail_dispatch.db", *, clock: Callable[[], float] = time.time):
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file. In-memory databases are
                not supported because each operation opens a new connection.
            clock: Callable returning the current epoch time in seconds.
        """
        self.db_path = db_path
        self._clock = clock

    def _now_ms(self) -> int:
        return to_ms(self._clock())

    async def init_db(self) -> None:
        """Create the schema. Safe to call repeatedly."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS emails (
                    id TEXT PRIMARY KEY,
                    sender_id TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    subject TEXT NOT NULL DEFAULT '',
                    body TEXT NOT NULL DEFAULT '',
                    scheduled_at_ms INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'SCHEDULED',
                    sent_at_ms INTEGER,
                    error TEXT,
                    created_at_ms INTEGER NOT NULL,
                    updated_at_ms INTEGER NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS email_jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email_id TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL DEFAULT 'QUEUED',
                    external_job_id TEXT,
                    min_delay_ms INTEGER NOT NULL,
                    hourly_limit INTEGER NOT NULL,
                    created_at_ms INTEGER NOT NULL,
                    updated_at_ms INTEGER NOT NULL,
                    FOREIGN KEY (email_id) REFERENCES emails(id) ON DELETE CASCADE
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_emails_sender ON emails(sender_id, created_at_ms)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_email_jobs_status ON email_jobs(status, created_at_ms)"
            )
            await db.commit()

    # Creation -----------------------------------------------------------------
    async def create_batch(
        self,
        sender_id: str,
        entries: Sequence[Mapping[str, Any]],
        *,
        scheduled_at_ms: int | None,
        min_delay_ms: int,
        hourly_limit: int,
    ) -> list[str]:
        """Persist one Email and one EmailJob per entry in a single transaction.

        Either every row of the batch is committed or none is.

        Args:
            sender_id: Owning account.
            entries: Mappings with ``recipient``, ``subject`` and ``body``.
            scheduled_at_ms: Earliest send time; ``None`` means now.
            min_delay_ms: Resolved minimum delay stored on each EmailJob.
            hourly_limit: Resolved hourly cap stored on each EmailJob.

        Returns:
            The generated email ids, in input order.
        """
        if not entries:
            return []
        now_ms = self._now_ms()
        scheduled = now_ms if scheduled_at_ms is None else int(scheduled_at_ms)
        ids = [uuid.uuid4().hex for _ in entries]
        email_rows = [
            (
                email_id,
                sender_id,
                entry["recipient"],
                entry.get("subject") or "",
                entry.get("body") or "",
                scheduled,
                EmailStatus.SCHEDULED.value,
                now_ms,
                now_ms,
            )
            for email_id, entry in zip(ids, entries, strict=True)
        ]
        job_rows = [
            (email_id, JobStatus.QUEUED.value, int(min_delay_ms), int(hourly_limit), now_ms, now_ms)
            for email_id in ids
        ]
        async with aiosqlite.connect(self.db_path) as db:
            try:
                await db.executemany(
                    """
                    INSERT INTO emails
                    (id, sender_id, recipient, subject, body, scheduled_at_ms, status, created_at_ms, updated_at_ms)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    email_rows,
                )
                await db.executemany(
                    """
                    INSERT INTO email_jobs
                    (email_id, status, min_delay_ms, hourly_limit, created_at_ms, updated_at_ms)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    job_rows,
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return ids

    # Reads --------------------------------------------------------------------
    @staticmethod
    def _decode_row(row: Sequence[Any], columns: Sequence[str]) -> dict[str, Any]:
        return dict(zip(columns, row))

    async def get(self, email_id: str) -> dict[str, Any] | None:
        """Return the Email joined with its EmailJob, or ``None`` if absent."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(f"{_EMAIL_SELECT} WHERE e.id = ?", (email_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_row(row, cols)

    async def list_by_sender(self, sender_id: str, limit: int = 100) -> list[dict[str, Any]]:
        """Return the most recent emails of a sender, newest first."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"{_EMAIL_SELECT} WHERE e.sender_id = ? ORDER BY e.created_at_ms DESC, e.rowid DESC LIMIT ?",
                (sender_id, int(limit)),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_row(row, cols) for row in rows]

    async def list_stale_queued(
        self, older_than_ms: int, limit: int = 500, after_seq: int | None = None
    ) -> list[dict[str, Any]]:
        """Return ``QUEUED`` jobs created before ``older_than_ms``, oldest first.

        Each row carries ``job_seq``, the job row number. Pass the last one seen
        as ``after_seq`` to fetch the next page.
        """
        query = f"{_STALE_SELECT} WHERE j.status = ? AND j.created_at_ms < ?"
        params: list[Any] = [JobStatus.QUEUED.value, int(older_than_ms)]
        if after_seq is not None:
            query += " AND j.id > ?"
            params.append(int(after_seq))
        query += " ORDER BY j.id ASC LIMIT ?"
        params.append(int(limit))
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_row(row, cols) for row in rows]

    async def count_by_status(self) -> dict[str, dict[str, int]]:
        """Return row counts grouped by Email status and by EmailJob status."""
        result: dict[str, dict[str, int]] = {"emails": {}, "jobs": {}}
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT status, COUNT(*) FROM emails GROUP BY status") as cur:
                for status, count in await cur.fetchall():
                    result["emails"][status] = int(count)
            async with db.execute("SELECT status, COUNT(*) FROM email_jobs GROUP BY status") as cur:
                for status, count in await cur.fetchall():
                    result["jobs"][status] = int(count)
        return result

    # Status updates -----------------------------------------------------------
    async def update_status(
        self,
        email_id: str,
        status: EmailStatus,
        fields: Mapping[str, Any] | None = None,
        *,
        job_status: JobStatus | None = None,
        job_fields: Mapping[str, Any] | None = None,
    ) -> bool:
        """Change the status of an Email and, optionally, of its EmailJob.

        Both rows are written in one transaction. Emails already ``SENT`` are
        left untouched.

        Args:
            email_id: The email to update.
            status: New Email status.
            fields: Extra Email columns (``sent_at_ms``, ``error``).
            job_status: New EmailJob status, if it changes too.
            job_fields: Extra EmailJob columns (``external_job_id``).

        Returns:
            True if the email existed and was not yet sent.

        Raises:
            ValueError: If an unknown column is requested.
        """
        fields = dict(fields or {})
        job_fields = dict(job_fields or {})
        unknown = (set(fields) - EMAIL_UPDATABLE_FIELDS) | (set(job_fields) - JOB_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update columns: {', '.join(sorted(unknown))}")

        now_ms = self._now_ms()
        email_sets = ["status = ?", "updated_at_ms = ?"] + [f"{key} = ?" for key in fields]
        email_values = [EmailStatus(status).value, now_ms, *fields.values()]

        async with aiosqlite.connect(self.db_path) as db:
            try:
                cursor = await db.execute(
                    f"UPDATE emails SET {', '.join(email_sets)} WHERE id = ? AND status != ?",
                    (*email_values, email_id, EmailStatus.SENT.value),
                )
                if cursor.rowcount == 0:
                    await db.rollback()
                    return False
                if job_status is not None or job_fields:
                    job_sets = ["updated_at_ms = ?"] + [f"{key} = ?" for key in job_fields]
                    job_values: list[Any] = [now_ms, *job_fields.values()]
                    if job_status is not None:
                        job_sets.insert(0, "status = ?")
                        job_values.insert(0, JobStatus(job_status).value)
                    await db.execute(
                        f"UPDATE email_jobs SET {', '.join(job_sets)} WHERE email_id = ?",
                        (*job_values, email_id),
                    )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return True

    async def mark_sending(self, email_id: str, external_job_id: str | None) -> bool:
        """Flag an email as in flight and record the queue correlation id."""
        return await self.update_status(
            email_id,
            EmailStatus.SENDING,
            job_status=JobStatus.SENDING,
            job_fields={"external_job_id": external_job_id},
        )

    async def mark_sent(self, email_id: str, sent_at_ms: int) -> bool:
        """Commit a successful delivery: ``SENT`` and ``COMPLETED`` together."""
        return await self.update_status(
            email_id,
            EmailStatus.SENT,
            {"sent_at_ms": int(sent_at_ms), "error": None},
            job_status=JobStatus.COMPLETED,
        )

    async def mark_failed(self, email_id: str, error: str) -> bool:
        """Record a failed delivery: ``FAILED`` and ``ERROR`` together."""
        return await self.update_status(
            email_id,
            EmailStatus.FAILED,
            {"error": error},
            job_status=JobStatus.ERROR,
        )
