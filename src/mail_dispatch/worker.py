# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Processing of a single due job.

:meth:`DispatchWorker.process` runs the fixed check sequence for one job:

1. idempotency: a missing or already ``SENT`` email is discarded
2. hourly cap and 3. minimum delay, through the rate limiter; a violation
   re-delays the job under its current lease and leaves the rows untouched
4. the email is flagged ``SENDING`` with the queue correlation id
5. the transport is invoked; success commits ``SENT``/``COMPLETED`` and the
   sender's last-sent timestamp, failure commits ``FAILED``/``ERROR`` and
   raises :class:`~mail_dispatch.errors.TransportFailure`

:meth:`DispatchWorker.handle` wraps ``process`` and settles the lease with
the queue, handing failures to the queue's retry backoff.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from .delayed_queue import DelayedQueue
from .errors import LeaseMismatch, TransportFailure
from .job_store import JobStore
from .logger import get_logger
from .models import (
    DEFAULT_HOURLY_LIMIT,
    DEFAULT_MIN_DELAY_MS,
    DispatchOutcome,
    EmailStatus,
    QueueJob,
    ms_to_iso,
    to_ms,
)
from .prometheus import DispatchMetrics
from .rate_limit import RateLimiter
from .transport import Transport, classify_smtp_error


def _first_set(*values, default: int) -> int:
    for value in values:
        if value is not None:
            return int(value)
    return default


class DispatchWorker:
    """Runs the check, deliver and commit sequence for dequeued jobs.

    One instance is shared by every worker task of a core; it holds no
    per-job state.
    """

    def __init__(
        self,
        store: JobStore,
        queue: DelayedQueue,
        rate_limiter: RateLimiter,
        transport: Transport,
        *,
        clock: Callable[[], float] = time.time,
        metrics: DispatchMetrics | None = None,
        logger=None,
        log_delivery_activity: bool = False,
    ):
        self.store = store
        self.queue = queue
        self.rate_limiter = rate_limiter
        self.transport = transport
        self._clock = clock
        self.metrics = metrics or DispatchMetrics()
        self.logger = logger or get_logger("DispatchWorker")
        self._log_delivery_activity = bool(log_delivery_activity)

    async def process(self, job: QueueJob) -> DispatchOutcome:
        """Run the check sequence and, if allowed, deliver the email.

        Returns:
            ``SKIPPED`` for a missing or already sent email, ``DEFERRED`` once
            the job was re-delayed, ``SENT`` after a committed delivery.

        Raises:
            TransportFailure: The transport raised; the email is ``FAILED``.
            LeaseMismatch: The lease expired before the job could be re-delayed.
        """
        email_id = job.id
        email = await self.store.get(email_id)
        if email is None or email["status"] == EmailStatus.SENT.value:
            self.logger.info(
                "Skipping job %s: %s", email_id, "email not found" if email is None else "already sent"
            )
            self.metrics.inc_skipped()
            return DispatchOutcome.SKIPPED

        sender_id = email["sender_id"]
        payload = job.payload or {}
        hourly_limit = _first_set(payload.get("hourly_limit"), email.get("hourly_limit"), default=DEFAULT_HOURLY_LIMIT)
        min_delay_ms = _first_set(payload.get("min_delay_ms"), email.get("min_delay_ms"), default=DEFAULT_MIN_DELAY_MS)

        deferral = await self.rate_limiter.check_and_plan(
            sender_id, hourly_limit=hourly_limit, min_delay_ms=min_delay_ms
        )
        if deferral:
            await self.queue.reinsert(job.lease, deferral.until_ms)
            self.metrics.inc_deferred(sender_id, deferral.reason)
            self.logger.debug(
                "Job %s of sender %s deferred (%s) until %s",
                email_id,
                sender_id,
                deferral.reason,
                ms_to_iso(deferral.until_ms),
            )
            return DispatchOutcome.DEFERRED

        if not await self.store.mark_sending(email_id, job.lease.correlation_id):
            self.logger.info("Skipping job %s: sent by another worker", email_id)
            self.metrics.inc_skipped()
            return DispatchOutcome.SKIPPED

        if self._log_delivery_activity:
            self.logger.info(
                "Attempting delivery of %s to %s (sender=%s, attempt=%d)",
                email_id,
                email["recipient"],
                sender_id,
                job.lease.attempt + 1,
            )
        try:
            await self.transport.send(email["recipient"], email["subject"], email["body"])
        except Exception as exc:
            is_temporary, smtp_code = classify_smtp_error(exc)
            error_info = f"{exc} (SMTP {smtp_code})" if smtp_code else str(exc) or type(exc).__name__
            await self.store.mark_failed(email_id, error_info)
            self.metrics.inc_error(sender_id)
            self.logger.warning("Delivery of %s for sender %s failed: %s", email_id, sender_id, error_info)
            raise TransportFailure(email_id, exc, permanent=not is_temporary) from exc

        sent_at_ms = to_ms(self._clock())
        await self.store.mark_sent(email_id, sent_at_ms)
        await self.rate_limiter.log_send(sender_id, sent_at_ms)
        self.metrics.inc_sent(sender_id)
        if self._log_delivery_activity:
            self.logger.info("Delivered %s to %s", email_id, email["recipient"])
        return DispatchOutcome.SENT

    async def handle(self, job: QueueJob) -> DispatchOutcome | None:
        """Process a job and settle its lease with the queue.

        Returns:
            The outcome, ``FAILED`` when the attempt failed, or None when the
            lease was lost.
        """
        try:
            outcome = await self.process(job)
        except LeaseMismatch as exc:
            self.logger.warning("Job %s: %s", job.id, exc)
            return None
        except TransportFailure as exc:
            await self._fail(job, str(exc.cause) or type(exc.cause).__name__, permanent=exc.permanent)
            return DispatchOutcome.FAILED
        except Exception as exc:
            self.logger.exception("Unexpected error while processing job %s: %s", job.id, exc)
            await self._fail(job, f"unexpected error: {exc}")
            return DispatchOutcome.FAILED

        if outcome in (DispatchOutcome.SENT, DispatchOutcome.SKIPPED):
            try:
                await self.queue.complete(job.lease)
            except LeaseMismatch as exc:
                self.logger.warning("Job %s finished after its lease expired: %s", job.id, exc)
        return outcome

    async def _fail(self, job: QueueJob, error: str, *, permanent: bool = False) -> None:
        try:
            retry_ms = await self.queue.fail(job.lease, error, permanent=permanent)
        except LeaseMismatch as exc:
            self.logger.warning("Job %s failed after its lease expired: %s", job.id, exc)
            return
        if retry_ms is not None:
            self.logger.info("Job %s will be retried at %s", job.id, ms_to_iso(retry_ms))
