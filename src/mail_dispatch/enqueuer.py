# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Batch intake: validate, persist atomically, then queue.

Scheduling a batch is a two-phase operation:

1. Every Email and EmailJob row of the batch is written in one job store
   transaction, so the workers never see a partial batch.
2. One delayed queue entry per email is submitted, keyed by the email id,
   with due time ``max(now, scheduled_at)`` and the resolved campaign limits
   in its payload.

Phase 2 runs in chunks. If a chunk cannot be submitted the rows already
persisted stay ``QUEUED`` and :class:`~mail_dispatch.errors.PartialSubmission`
tells the caller which ids are not queued; the reconciliation sweep picks
them up later.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from .delayed_queue import DelayedQueue
from .errors import InvalidInput, PartialSubmission
from .job_store import JobStore
from .logger import get_logger
from .models import (
    DEFAULT_HOURLY_LIMIT,
    DEFAULT_MIN_DELAY_MS,
    ScheduleRequest,
    datetime_to_ms,
    to_ms,
)

DEFAULT_MAX_BATCH = 10_000
DEFAULT_SUBMIT_CHUNK_SIZE = 500


def queue_entry(email_id: str, due_ms: int, *, min_delay_ms: int, hourly_limit: int) -> dict[str, Any]:
    """Build the delayed queue entry of one email."""
    return {
        "id": email_id,
        "due_ms": int(due_ms),
        "payload": {
            "email_id": email_id,
            "min_delay_ms": int(min_delay_ms),
            "hourly_limit": int(hourly_limit),
        },
    }


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts)


class Enqueuer:
    """Accepts schedule requests and turns them into persisted, queued jobs.

    Attributes:
        store: Job store receiving the Email and EmailJob rows.
        queue: Delayed queue receiving one entry per email.
        default_min_delay_ms: Minimum delay used when a request has none.
        default_hourly_limit: Hourly cap used when a request has none.
        max_batch: Largest accepted batch.
    """

    def __init__(
        self,
        store: JobStore,
        queue: DelayedQueue,
        *,
        clock: Callable[[], float] = time.time,
        default_min_delay_ms: int = DEFAULT_MIN_DELAY_MS,
        default_hourly_limit: int = DEFAULT_HOURLY_LIMIT,
        max_batch: int = DEFAULT_MAX_BATCH,
        submit_chunk_size: int = DEFAULT_SUBMIT_CHUNK_SIZE,
        logger=None,
    ):
        self.store = store
        self.queue = queue
        self._clock = clock
        self.default_min_delay_ms = int(default_min_delay_ms)
        self.default_hourly_limit = int(default_hourly_limit)
        self.max_batch = max(1, int(max_batch))
        self.submit_chunk_size = max(1, int(submit_chunk_size))
        self.logger = logger or get_logger("Enqueuer")

    def validate(self, payload: Mapping[str, Any]) -> ScheduleRequest:
        """Validate a raw schedule request.

        Raises:
            InvalidInput: If the request is malformed or too large.
        """
        if not isinstance(payload, Mapping):
            raise InvalidInput("schedule request must be an object")
        try:
            request = ScheduleRequest.model_validate(dict(payload))
        except ValidationError as exc:
            raise InvalidInput(_format_validation_error(exc)) from exc
        if len(request.emails) > self.max_batch:
            raise InvalidInput(f"Cannot schedule more than {self.max_batch} emails at once")
        return request

    async def schedule(
        self,
        sender_id: str | None,
        emails: Sequence[Mapping[str, Any]] | None,
        scheduled_at: datetime | str | None = None,
        min_delay_ms: int | None = None,
        hourly_limit: int | None = None,
    ) -> int:
        """Schedule a batch of emails for one sender.

        Args:
            sender_id: Owning account.
            emails: Ordered ``{recipient, subject, body}`` mappings.
            scheduled_at: Earliest send time; now when omitted.
            min_delay_ms: Campaign minimum delay; the default when omitted.
            hourly_limit: Campaign hourly cap; the default when omitted.

        Returns:
            The number of jobs accepted.

        Raises:
            InvalidInput: Nothing was persisted.
            PartialSubmission: The batch was persisted but not fully queued.
        """
        payload = {
            "sender_id": sender_id,
            "emails": emails,
            "scheduled_at": scheduled_at,
            "min_delay_ms": min_delay_ms,
            "hourly_limit": hourly_limit,
        }
        return len(await self.enqueue(self.validate(payload)))

    async def enqueue(self, request: ScheduleRequest) -> list[str]:
        """Persist and queue an already validated request.

        Returns:
            The created email ids, in request order.
        """
        min_delay_ms = self.default_min_delay_ms if request.min_delay_ms is None else request.min_delay_ms
        hourly_limit = self.default_hourly_limit if request.hourly_limit is None else request.hourly_limit
        now_ms = to_ms(self._clock())
        scheduled_ms = datetime_to_ms(request.scheduled_at) if request.scheduled_at else now_ms

        ids = await self.store.create_batch(
            request.sender_id,
            [entry.model_dump() for entry in request.emails],
            scheduled_at_ms=scheduled_ms,
            min_delay_ms=min_delay_ms,
            hourly_limit=hourly_limit,
        )
        due_ms = max(now_ms, scheduled_ms)
        entries = [
            queue_entry(email_id, due_ms, min_delay_ms=min_delay_ms, hourly_limit=hourly_limit)
            for email_id in ids
        ]

        submitted = 0
        for start in range(0, len(entries), self.submit_chunk_size):
            chunk = entries[start:start + self.submit_chunk_size]
            try:
                await self.queue.submit_bulk(chunk)
            except Exception as exc:
                missing = ids[submitted:]
                self.logger.error(
                    "Queue submission failed for sender %s: %d of %d jobs not queued (%s)",
                    request.sender_id,
                    len(missing),
                    len(ids),
                    exc,
                )
                raise PartialSubmission(ids, missing, cause=exc) from exc
            submitted += len(chunk)

        self.logger.info(
            "Scheduled %d emails for sender %s (due at %d, min_delay=%dms, hourly_limit=%d)",
            len(ids),
            request.sender_id,
            due_ms,
            min_delay_ms,
            hourly_limit,
        )
        return ids
