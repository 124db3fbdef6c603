# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration of the mail dispatch engine.

:class:`MailDispatchCore` wires the job store, the delayed queue, the rate
ledger and the transport together and runs:

- ``concurrency`` worker tasks, each pulling one due job at a time
- a periodic reconciliation task resubmitting jobs that never got queued

It also exposes the command interface used by the HTTP API and the CLI.

Example:
    Running the dispatcher::

        from mail_dispatch.core import MailDispatchCore

        core = MailDispatchCore(db_path="/data/mail_dispatch.db", concurrency=5)
        await core.start()
        await core.handle_command("schedule", {
            "sender_id": "u1",
            "emails": [{"recipient": "a@example.com", "subject": "Hi", "body": "..."}],
        })
        # To stop gracefully
        await core.stop()
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable, Sequence
from typing import Any

from .delayed_queue import DEFAULT_LEASE_SECONDS, DEFAULT_MAX_ATTEMPTS, DelayedQueue
from .enqueuer import DEFAULT_MAX_BATCH, Enqueuer
from .errors import InvalidInput, PartialSubmission
from .job_store import JobStore
from .logger import get_logger
from .models import DEFAULT_HOURLY_LIMIT, DEFAULT_MIN_DELAY_MS, DispatchOutcome
from .prometheus import DispatchMetrics
from .rate_ledger import MemoryRateLedger, RateLedger
from .rate_limit import RateLimiter
from .reconcile import DEFAULT_RECONCILE_AFTER_SECONDS, DEFAULT_RECONCILE_INTERVAL, Reconciler
from .transport import MockTransport, Transport
from .worker import DispatchWorker

DEFAULT_CONCURRENCY = 5
DEFAULT_DRAIN_LIMIT = 10_000


class MailDispatchCore:
    """Central coordinator of the dispatch engine.

    Attributes:
        store: Job store (source of truth for every email).
        queue: Delayed queue shared by the worker tasks.
        ledger: Rate ledger holding hourly counters and last-send times.
        transport: Delivery backend.
        metrics: Prometheus metrics collector.
        enqueuer: Batch intake.
        worker: Per-job processing shared by the worker tasks.
        reconciler: Sweep resubmitting unqueued jobs.
    """

    def __init__(
        self,
        *,
        db_path: str = "/data/mail_dispatch.db",
        ledger: RateLedger | None = None,
        transport: Transport | None = None,
        metrics: DispatchMetrics | None = None,
        logger=None,
        clock: Callable[[], float] = time.time,
        concurrency: int = DEFAULT_CONCURRENCY,
        start_active: bool = True,
        poll_interval: float = 0.5,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delays: Sequence[int] | None = None,
        default_min_delay_ms: int = DEFAULT_MIN_DELAY_MS,
        default_hourly_limit: int = DEFAULT_HOURLY_LIMIT,
        max_enqueue_batch: int = DEFAULT_MAX_BATCH,
        reconcile_interval: float = DEFAULT_RECONCILE_INTERVAL,
        reconcile_after_seconds: int = DEFAULT_RECONCILE_AFTER_SECONDS,
        log_delivery_activity: bool = False,
    ):
        """Initialize the core.

        Args:
            db_path: SQLite file holding both the job store and the queue.
            ledger: Shared rate ledger; an in-process one when omitted.
            transport: Delivery backend; a mock transport when omitted.
            metrics: Prometheus metrics collector.
            logger: Custom logger instance.
            clock: Callable returning the current epoch time in seconds.
            concurrency: Number of worker tasks started by :meth:`start`.
            start_active: Whether workers dequeue jobs right away.
            poll_interval: Seconds an idle worker waits before polling again.
            lease_seconds: Lifetime of a delivery lease.
            max_attempts: Failed deliveries after which a job is given up.
            retry_delays: Backoff schedule for failed deliveries, in seconds.
            default_min_delay_ms: Minimum delay for campaigns without one.
            default_hourly_limit: Hourly cap for campaigns without one.
            max_enqueue_batch: Largest batch accepted by ``schedule``.
            reconcile_interval: Seconds between two reconciliation sweeps.
            reconcile_after_seconds: Age after which an unqueued job is resubmitted.
            log_delivery_activity: Log every delivery attempt at info level.
        """
        self.logger = logger or get_logger()
        self._clock = clock
        self.store = JobStore(db_path, clock=clock)
        self.queue = DelayedQueue(
            db_path,
            clock=clock,
            lease_seconds=lease_seconds,
            max_attempts=max_attempts,
            retry_delays=retry_delays,
            logger=self.logger,
        )
        self.ledger = ledger or MemoryRateLedger(clock=clock)
        self.rate_limiter = RateLimiter(self.ledger, clock=clock)
        self.transport = transport or MockTransport(logger=self.logger)
        self.metrics = metrics or DispatchMetrics()
        self.enqueuer = Enqueuer(
            self.store,
            self.queue,
            clock=clock,
            default_min_delay_ms=default_min_delay_ms,
            default_hourly_limit=default_hourly_limit,
            max_batch=max_enqueue_batch,
            logger=self.logger,
        )
        self.worker = DispatchWorker(
            self.store,
            self.queue,
            self.rate_limiter,
            self.transport,
            clock=clock,
            metrics=self.metrics,
            logger=self.logger,
            log_delivery_activity=log_delivery_activity,
        )
        self.reconciler = Reconciler(self.store, self.queue, clock=clock, logger=self.logger)

        self._concurrency = max(1, int(concurrency))
        self._poll_interval = max(0.05, float(poll_interval))
        self._reconcile_interval = float(reconcile_interval)
        self._reconcile_after_seconds = int(reconcile_after_seconds)
        self._active = bool(start_active)
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._worker_tasks: list[asyncio.Task] = []
        self._task_reconcile: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return self._active

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Create the database schema and publish the initial queue depth."""
        await self.store.init_db()
        await self.queue.init_db()
        await self._refresh_pending_gauge()

    async def start(self) -> None:
        """Start the worker tasks and the reconciliation task."""
        await self.init()
        self._stop.clear()
        self._worker_tasks = [
            asyncio.create_task(self._worker_loop(index), name=f"dispatch-worker-{index}")
            for index in range(self._concurrency)
        ]
        if self._reconcile_interval > 0 and not math.isinf(self._reconcile_interval):
            self._task_reconcile = asyncio.create_task(self._reconcile_loop(), name="reconcile-loop")
        self.logger.info("Dispatch core started with %d workers (active=%s)", self._concurrency, self._active)

    async def stop(self) -> None:
        """Signal every task to stop and wait for in-flight jobs to settle."""
        self._stop.set()
        self._wake_event.set()
        tasks = [task for task in [*self._worker_tasks, self._task_reconcile] if task]
        await asyncio.gather(*tasks, return_exceptions=True)
        self._worker_tasks = []
        self._task_reconcile = None
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()
        close = getattr(self.ledger, "close", None)
        if close is not None:
            await close()

    # ------------------------------------------------------------------- workers
    async def _worker_loop(self, index: int) -> None:
        """Pull and process due jobs until :meth:`stop` is called."""
        self.logger.debug("Dispatch worker %d started", index)
        while not self._stop.is_set():
            if not self._active:
                await self._wait_for_wakeup(self._poll_interval)
                continue
            try:
                job = await self.queue.dequeue()
                if job is None:
                    await self._wait_for_wakeup(self._poll_interval)
                    continue
                await self.worker.handle(job)
                await self._refresh_pending_gauge()
            except Exception as exc:
                self.logger.exception("Unhandled error in dispatch worker %d: %s", index, exc)
                await self._wait_for_wakeup(self._poll_interval)
        self.logger.debug("Dispatch worker %d stopped", index)

    async def drain(self, limit: int = DEFAULT_DRAIN_LIMIT) -> dict[str, int]:
        """Process every job due now, one at a time, in the calling task.

        Jobs re-delayed during the drain are only picked up again if their
        new due time has already passed.

        Returns:
            Number of jobs per outcome.
        """
        summary = {outcome.value: 0 for outcome in DispatchOutcome}
        for _ in range(max(0, int(limit))):
            job = await self.queue.dequeue()
            if job is None:
                break
            outcome = await self.worker.handle(job)
            if outcome is not None:
                summary[outcome.value] += 1
        await self._refresh_pending_gauge()
        return summary

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause a loop until timeout or wake event."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=max(0.0, float(timeout)))
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()

    # ------------------------------------------------------------- reconciliation
    async def _reconcile_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._reconcile_interval)
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                break
            try:
                await self.reconcile()
            except Exception as exc:
                self.logger.exception("Reconciliation sweep failed: %s", exc)

    async def reconcile(self, older_than_seconds: int | None = None) -> list[str]:
        """Run one reconciliation sweep and wake the workers if anything was queued."""
        if older_than_seconds is None:
            older_than_seconds = self._reconcile_after_seconds
        resubmitted = await self.reconciler.sweep(older_than_seconds)
        if resubmitted:
            self._wake_event.set()
            await self._refresh_pending_gauge()
        return resubmitted

    async def _refresh_pending_gauge(self) -> None:
        try:
            pending = await self.queue.count_pending()
        except Exception:
            self.logger.exception("Failed to refresh pending gauge")
            return
        self.metrics.set_pending(pending)

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute an external control command.

        Supported commands:
        - ``schedule``: validate, persist and queue a batch
        - ``listJobs``: latest jobs of a sender
        - ``getJob``: one job with its queue entry
        - ``cancel``: remove a waiting job from the queue
        - ``reconcile``: run a reconciliation sweep now
        - ``stats``: row and queue counts
        - ``run now``: wake idle workers
        - ``suspend`` / ``activate``: pause or resume dequeuing

        Args:
            cmd: Command name to execute.
            payload: Command-specific parameters.

        Returns:
            dict: Command result with ``ok`` status and command-specific data.
        """
        payload = payload or {}
        match cmd:
            case "schedule":
                return await self._handle_schedule(payload)
            case "listJobs":
                sender_id = payload.get("sender_id")
                if not sender_id:
                    return {"ok": False, "error": "sender_id required"}
                limit = int(payload.get("limit") or 100)
                jobs = await self.store.list_by_sender(sender_id, limit=limit)
                return {"ok": True, "jobs": jobs}
            case "getJob":
                email_id = payload.get("id")
                job = await self.store.get(email_id) if email_id else None
                if job is None:
                    return {"ok": False, "error": "job not found"}
                return {"ok": True, "job": job, "queue": await self.queue.get(email_id)}
            case "cancel":
                return await self._handle_cancel(payload.get("id"))
            case "reconcile":
                resubmitted = await self.reconcile(payload.get("older_than_seconds"))
                return {"ok": True, "resubmitted": resubmitted}
            case "stats":
                counts = await self.store.count_by_status()
                return {"ok": True, "active": self._active, "queue": await self.queue.counts(), **counts}
            case "run now":
                self._wake_event.set()
                return {"ok": True}
            case "suspend":
                self._active = False
                return {"ok": True, "active": False}
            case "activate":
                self._active = True
                self._wake_event.set()
                return {"ok": True, "active": True}
            case _:
                return {"ok": False, "error": "unknown command"}

    async def _handle_schedule(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            request = self.enqueuer.validate(payload)
            ids = await self.enqueuer.enqueue(request)
        except InvalidInput as exc:
            return {"ok": False, "error": str(exc), "code": exc.code}
        except PartialSubmission as exc:
            return {
                "ok": False,
                "error": str(exc),
                "code": exc.code,
                "count": len(exc.persisted_ids),
                "missing": exc.missing_ids,
            }
        self._wake_event.set()
        await self._refresh_pending_gauge()
        return {"ok": True, "count": len(ids), "ids": ids}

    async def _handle_cancel(self, email_id: str | None) -> dict[str, Any]:
        if not email_id:
            return {"ok": False, "error": "id required"}
        if not await self.queue.remove(email_id):
            return {"ok": False, "error": "job not found or already in progress"}
        await self.store.mark_failed(email_id, "cancelled")
        await self._refresh_pending_gauge()
        self.logger.info("Job %s cancelled", email_id)
        return {"ok": True}
