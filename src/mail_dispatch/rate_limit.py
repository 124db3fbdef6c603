# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-sender hourly cap and minimum inter-send delay.

The limiter consults a shared :class:`~mail_dispatch.rate_ledger.RateLedger`
before every delivery attempt. Checks run in a fixed order:

1. Hourly cap: the counter of the current UTC hour bucket is atomically
   incremented; once it exceeds the limit the job waits for the next bucket.
2. Minimum delay: the last successful send of the sender is read; a job
   arriving too early waits until ``last_sent + min_delay``.

The counter increment and the last-sent read are independent ledger
operations. Two workers evaluating the same sender at the same instant can
both pass the delay check before either commits its send.

Example:
    Using the rate limiter::

        limiter = RateLimiter(ledger)
        deferral = await limiter.check_and_plan("u1", hourly_limit=200, min_delay_ms=2000)
        if deferral:
            await queue.reinsert(job.lease, deferral.until_ms)
        else:
            await transport.send(...)
            await limiter.log_send("u1", sent_at_ms)
"""

from __future__ import annotations

import time
from collections.abc import Callable

from .models import Deferral, hour_bucket, next_hour_ms, to_ms
from .rate_ledger import RateLedger

# Counters must outlive their one-hour bucket to absorb clock skew at the boundary
COUNTER_TTL_SECONDS = 7200

HOURLY_CAP = "hourly_cap"
MIN_DELAY = "min_delay"


def rate_key(sender_id: str, bucket: str) -> str:
    """Ledger key of the hourly counter of a sender."""
    return f"email_rate:{sender_id}:{bucket}"


def last_sent_key(sender_id: str) -> str:
    """Ledger key holding the last successful send (epoch ms) of a sender."""
    return f"last_sent:{sender_id}"


class RateLimiter:
    """Per-sender limiter backed by a shared ledger.

    Attributes:
        ledger: The ledger holding counters and last-send timestamps.
    """

    def __init__(
        self,
        ledger: RateLedger,
        *,
        clock: Callable[[], float] = time.time,
        counter_ttl: int = COUNTER_TTL_SECONDS,
    ):
        """Initialize the limiter.

        Args:
            ledger: Shared ledger implementation.
            clock: Callable returning the current epoch time in seconds.
            counter_ttl: Expiry applied to a freshly created hourly counter.
        """
        self.ledger = ledger
        self._clock = clock
        self._counter_ttl = counter_ttl

    async def check_and_plan(self, sender_id: str, *, hourly_limit: int, min_delay_ms: int) -> Deferral | None:
        """Check both constraints and compute the deferral if one is violated.

        Every call consumes one slot of the current hour bucket, whether or
        not the job is sent afterwards.

        Args:
            sender_id: Owner of the job.
            hourly_limit: Maximum sends per hour bucket for this job.
            min_delay_ms: Minimum spacing between two sends of the sender.

        Returns:
            A :class:`Deferral` with the new due time, or None if the job may
            be delivered now.
        """
        now_ms = to_ms(self._clock())

        bucket = hour_bucket(now_ms)
        key = rate_key(sender_id, bucket)
        count = await self.ledger.increment_and_get(key)
        if count == 1:
            await self.ledger.set_expiry(key, self._counter_ttl)
        if count > int(hourly_limit):
            return Deferral(
                HOURLY_CAP,
                next_hour_ms(now_ms),
                {"bucket": bucket, "count": count, "limit": int(hourly_limit)},
            )

        min_delay_ms = int(min_delay_ms)
        if min_delay_ms > 0:
            raw = await self.ledger.get(last_sent_key(sender_id))
            if raw is not None:
                last_sent_ms = int(raw)
                if now_ms - last_sent_ms < min_delay_ms:
                    return Deferral(
                        MIN_DELAY,
                        last_sent_ms + min_delay_ms,
                        {"last_sent_ms": last_sent_ms, "min_delay_ms": min_delay_ms},
                    )
        return None

    async def log_send(self, sender_id: str, sent_at_ms: int | None = None) -> None:
        """Record a successful send as the sender's last-sent timestamp."""
        if sent_at_ms is None:
            sent_at_ms = to_ms(self._clock())
        await self.ledger.set(last_sent_key(sender_id), str(int(sent_at_ms)))
