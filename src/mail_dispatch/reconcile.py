# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Resubmission of persisted jobs that never reached the delayed queue."""

from __future__ import annotations

import time
from collections.abc import Callable

from .delayed_queue import DelayedQueue
from .enqueuer import queue_entry
from .job_store import JobStore
from .logger import get_logger
from .models import DEFAULT_HOURLY_LIMIT, DEFAULT_MIN_DELAY_MS, to_ms

DEFAULT_RECONCILE_INTERVAL = 300
DEFAULT_RECONCILE_AFTER_SECONDS = 600


class Reconciler:
    """Finds ``QUEUED`` jobs without a queue entry and queues them again.

    Only jobs older than a threshold are considered, so a batch that is still
    being submitted by the enqueuer is left alone.
    """

    def __init__(
        self,
        store: JobStore,
        queue: DelayedQueue,
        *,
        clock: Callable[[], float] = time.time,
        logger=None,
    ):
        self.store = store
        self.queue = queue
        self._clock = clock
        self.logger = logger or get_logger("Reconciler")

    async def sweep(
        self, older_than_seconds: int = DEFAULT_RECONCILE_AFTER_SECONDS, limit: int = 500
    ) -> list[str]:
        """Resubmit stale unqueued jobs.

        Returns:
            The ids that were queued again.
        """
        now_ms = to_ms(self._clock())
        threshold_ms = now_ms - max(0, int(older_than_seconds)) * 1000
        entries: list[dict] = []
        after_seq = None
        # Jobs still in the queue stay QUEUED, so page past them
        while len(entries) < limit:
            page = await self.store.list_stale_queued(threshold_ms, limit=limit, after_seq=after_seq)
            for row in page:
                if len(entries) >= limit:
                    break
                if await self.queue.contains(row["id"]):
                    continue
                entries.append(
                    queue_entry(
                        row["id"],
                        max(now_ms, int(row["scheduled_at_ms"])),
                        min_delay_ms=DEFAULT_MIN_DELAY_MS if row["min_delay_ms"] is None else row["min_delay_ms"],
                        hourly_limit=row["hourly_limit"] or DEFAULT_HOURLY_LIMIT,
                    )
                )
            if len(page) < limit:
                break
            after_seq = page[-1]["job_seq"]

        if not entries:
            return []

        resubmitted = await self.queue.submit_bulk(entries)
        self.logger.warning("Reconciliation queued %d orphaned jobs", len(resubmitted))
        return resubmitted
