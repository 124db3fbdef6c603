# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite-backed delayed job queue with delivery leases.

Every entry is keyed by the Email id, so submitting the same id twice is a
no-op. An entry moves through these states::

    delayed --dequeue--> active --complete--> completed
       ^                   |  \\--fail (attempts left)--> delayed (backoff)
       |                   |   \\-fail (exhausted)------> failed
       +----reinsert-------+
    delayed --remove--> cancelled

``dequeue`` atomically claims the earliest due entry and hands out a
:class:`~mail_dispatch.models.DeliveryLease`. Only the holder of the current
lease can re-delay, complete or fail the entry. A lease that is not settled
within ``lease_seconds`` expires and the entry becomes claimable again, which
recovers jobs of a crashed worker.

Completed, failed and cancelled rows are kept so late duplicate submissions
and the reconciliation sweep see the id as known.
"""

from __future__ import annotations

import json
import secrets
import time
import uuid
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import aiosqlite

from .errors import LeaseMismatch
from .logger import get_logger
from .models import DeliveryLease, QueueJob, to_ms

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_DELAYS = [60, 300, 900, 3600, 7200]  # 1min, 5min, 15min, 1h, 2h
DEFAULT_LEASE_SECONDS = 300

STATE_DELAYED = "delayed"
STATE_ACTIVE = "active"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"
STATE_CANCELLED = "cancelled"


def calculate_retry_delay(attempt: int, delays: Sequence[int] | None = None) -> int:
    """Return the backoff in seconds after the given number of failed attempts.

    Args:
        attempt: Number of previous failed attempts (0-indexed).
        delays: Delay schedule; the last value repeats once exhausted.
    """
    if not delays:
        delays = DEFAULT_RETRY_DELAYS
    if attempt >= len(delays):
        return int(delays[-1])
    return int(delays[max(0, attempt)])


class DelayedQueue:
    """Durable time-ordered queue supporting delayed execution and re-delay.

    Attributes:
        db_path: Path to the SQLite database file (may be shared with the job store).
        lease_seconds: Lifetime of a delivery lease.
        max_attempts: Failed deliveries after which an entry is given up.
        retry_delays: Backoff schedule for failed deliveries, in seconds.
    """

    def __init__(
        self,
        db_path: str = "/data/mail_dispatch.db",
        *,
        clock: Callable[[], float] = time.time,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delays: Sequence[int] | None = None,
        logger=None,
    ):
        self.db_path = db_path
        self._clock = clock
        self.lease_seconds = max(1, int(lease_seconds))
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delays = list(retry_delays or DEFAULT_RETRY_DELAYS)
        self.logger = logger or get_logger("DelayedQueue")

    def _now_ms(self) -> int:
        return to_ms(self._clock())

    async def init_db(self) -> None:
        """Create the queue table. Safe to call repeatedly."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS queue_entries (
                    id TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    due_ms INTEGER NOT NULL,
                    state TEXT NOT NULL DEFAULT 'delayed',
                    correlation_id TEXT NOT NULL,
                    lease_token TEXT,
                    lease_expires_ms INTEGER,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    created_at_ms INTEGER NOT NULL,
                    updated_at_ms INTEGER NOT NULL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_queue_due ON queue_entries(state, due_ms)"
            )
            await db.commit()

    # Submission ---------------------------------------------------------------
    async def submit_bulk(self, entries: Sequence[Mapping[str, Any]]) -> list[str]:
        """Add entries, ignoring ids the queue already knows.

        Args:
            entries: Mappings with ``id``, ``payload`` (JSON-serialisable dict)
                and ``due_ms``.

        Returns:
            The ids that were newly created.
        """
        if not entries:
            return []
        now_ms = self._now_ms()
        inserted: list[str] = []
        async with aiosqlite.connect(self.db_path) as db:
            try:
                for entry in entries:
                    cursor = await db.execute(
                        """
                        INSERT OR IGNORE INTO queue_entries
                        (id, payload, due_ms, state, correlation_id, created_at_ms, updated_at_ms)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            entry["id"],
                            json.dumps(entry.get("payload") or {}),
                            int(entry.get("due_ms") or now_ms),
                            STATE_DELAYED,
                            uuid.uuid4().hex,
                            now_ms,
                            now_ms,
                        ),
                    )
                    if cursor.rowcount:
                        inserted.append(entry["id"])
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return inserted

    # Consumption --------------------------------------------------------------
    async def dequeue(self) -> QueueJob | None:
        """Claim the earliest due entry, or return None if nothing is due."""
        now_ms = self._now_ms()
        token = secrets.token_hex(16)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE queue_entries
                SET state = ?, lease_token = ?, lease_expires_ms = ?, updated_at_ms = ?
                WHERE id = (
                    SELECT id FROM queue_entries
                    WHERE (state = ? AND due_ms <= ?)
                       OR (state = ? AND lease_expires_ms <= ?)
                    ORDER BY due_ms ASC, rowid ASC
                    LIMIT 1
                )
                """,
                (
                    STATE_ACTIVE,
                    token,
                    now_ms + self.lease_seconds * 1000,
                    now_ms,
                    STATE_DELAYED,
                    now_ms,
                    STATE_ACTIVE,
                    now_ms,
                ),
            )
            await db.commit()
            if cursor.rowcount == 0:
                return None
            # The fresh token identifies the claimed row
            async with db.execute(
                "SELECT id, payload, due_ms, correlation_id, attempts FROM queue_entries WHERE lease_token = ?",
                (token,),
            ) as cur:
                row = await cur.fetchone()
        if not row:
            return None
        entry_id, payload, due_ms, correlation_id, attempts = row
        lease = DeliveryLease(entry_id=entry_id, token=token, correlation_id=correlation_id, attempt=int(attempts))
        return QueueJob(id=entry_id, payload=json.loads(payload), lease=lease, due_ms=int(due_ms))

    async def _settle(self, lease: DeliveryLease, sets: str, values: Sequence[Any]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                UPDATE queue_entries
                SET {sets}, lease_token = NULL, lease_expires_ms = NULL, updated_at_ms = ?
                WHERE id = ? AND state = ? AND lease_token = ?
                """,
                (*values, self._now_ms(), lease.entry_id, STATE_ACTIVE, lease.token),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise LeaseMismatch(f"Lease for {lease.entry_id} is no longer held")

    async def reinsert(self, lease: DeliveryLease, due_ms: int) -> None:
        """Put a leased job back with a new due time, keeping its identity.

        Raises:
            LeaseMismatch: If the lease expired or was already settled.
        """
        await self._settle(lease, "state = ?, due_ms = ?", (STATE_DELAYED, int(due_ms)))

    async def complete(self, lease: DeliveryLease) -> None:
        """Mark a leased job as done."""
        await self._settle(lease, "state = ?", (STATE_COMPLETED,))

    async def fail(self, lease: DeliveryLease, error: str, *, permanent: bool = False) -> int | None:
        """Record a failed delivery and schedule a retry according to the backoff.

        Args:
            lease: Lease of the failed attempt.
            error: Error description kept on the entry.
            permanent: Give up immediately instead of retrying.

        Returns:
            The retry due time in epoch ms, or None when the entry is given up.
        """
        attempts = lease.attempt + 1
        if permanent or attempts >= self.max_attempts:
            await self._settle(
                lease,
                "state = ?, attempts = ?, last_error = ?",
                (STATE_FAILED, attempts, error),
            )
            self.logger.error(
                "Job %s failed permanently after %d attempts: %s", lease.entry_id, attempts, error
            )
            return None
        retry_ms = self._now_ms() + calculate_retry_delay(lease.attempt, self.retry_delays) * 1000
        await self._settle(
            lease,
            "state = ?, due_ms = ?, attempts = ?, last_error = ?",
            (STATE_DELAYED, retry_ms, attempts, error),
        )
        return retry_ms

    # Inspection / cancellation ------------------------------------------------
    async def remove(self, entry_id: str) -> bool:
        """Cancel an entry that is not yet being processed.

        Returns:
            True if the entry was waiting and is now cancelled.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE queue_entries SET state = ?, updated_at_ms = ? WHERE id = ? AND state = ?",
                (STATE_CANCELLED, self._now_ms(), entry_id, STATE_DELAYED),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def contains(self, entry_id: str) -> bool:
        """Return True if the queue knows the id, whatever its state."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT 1 FROM queue_entries WHERE id = ?", (entry_id,)) as cur:
                return await cur.fetchone() is not None

    async def get(self, entry_id: str) -> dict[str, Any] | None:
        """Return an entry for inspection, without its lease token."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT id, payload, due_ms, state, correlation_id, attempts, last_error,
                       created_at_ms, updated_at_ms
                FROM queue_entries WHERE id = ?
                """,
                (entry_id,),
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        entry = dict(zip(cols, row))
        entry["payload"] = json.loads(entry["payload"])
        return entry

    async def counts(self) -> dict[str, int]:
        """Return the number of entries per state."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT state, COUNT(*) FROM queue_entries GROUP BY state") as cur:
                rows = await cur.fetchall()
        return {state: int(count) for state, count in rows}

    async def count_pending(self) -> int:
        """Return the number of entries waiting or in flight."""
        counts = await self.counts()
        return counts.get(STATE_DELAYED, 0) + counts.get(STATE_ACTIVE, 0)
