import pytest

from conftest import HOUR_START_MS
from mail_dispatch.models import HOUR_MS, hour_bucket
from mail_dispatch.rate_ledger import MemoryRateLedger
from mail_dispatch.rate_limit import (
    COUNTER_TTL_SECONDS,
    HOURLY_CAP,
    MIN_DELAY,
    RateLimiter,
    last_sent_key,
    rate_key,
)


class RecordingLedger(MemoryRateLedger):
    def __init__(self, clock):
        super().__init__(clock=clock)
        self.expiry_calls = []

    async def set_expiry(self, key, ttl_seconds):
        self.expiry_calls.append((key, ttl_seconds))
        await super().set_expiry(key, ttl_seconds)


def test_key_formats():
    assert rate_key("u1", "2025-01-06T10") == "email_rate:u1:2025-01-06T10"
    assert last_sent_key("u1") == "last_sent:u1"


@pytest.mark.asyncio
async def test_hourly_cap_defers_to_next_bucket(clock):
    ledger = RecordingLedger(clock)
    limiter = RateLimiter(ledger, clock=clock)

    assert await limiter.check_and_plan("u1", hourly_limit=2, min_delay_ms=0) is None
    assert await limiter.check_and_plan("u1", hourly_limit=2, min_delay_ms=0) is None
    deferral = await limiter.check_and_plan("u1", hourly_limit=2, min_delay_ms=0)

    assert deferral is not None
    assert deferral.reason == HOURLY_CAP
    assert deferral.until_ms == HOUR_START_MS + HOUR_MS
    assert deferral.detail["count"] == 3
    # Expiry is set once, when the counter is created
    assert ledger.expiry_calls == [("email_rate:u1:2025-01-06T10", COUNTER_TTL_SECONDS)]


@pytest.mark.asyncio
async def test_counters_are_per_sender_and_per_bucket(clock):
    limiter = RateLimiter(MemoryRateLedger(clock=clock), clock=clock)

    assert await limiter.check_and_plan("u1", hourly_limit=1, min_delay_ms=0) is None
    assert await limiter.check_and_plan("u2", hourly_limit=1, min_delay_ms=0) is None
    assert (await limiter.check_and_plan("u1", hourly_limit=1, min_delay_ms=0)).reason == HOURLY_CAP

    clock.advance(3600)
    assert await limiter.check_and_plan("u1", hourly_limit=1, min_delay_ms=0) is None


@pytest.mark.asyncio
async def test_min_delay_defers_until_last_send_plus_delay(clock):
    limiter = RateLimiter(MemoryRateLedger(clock=clock), clock=clock)
    assert await limiter.check_and_plan("u1", hourly_limit=100, min_delay_ms=5000) is None
    await limiter.log_send("u1")
    sent_ms = clock.now_ms

    clock.advance(2)
    deferral = await limiter.check_and_plan("u1", hourly_limit=100, min_delay_ms=5000)
    assert deferral.reason == MIN_DELAY
    assert deferral.until_ms == sent_ms + 5000

    clock.advance(3)
    assert await limiter.check_and_plan("u1", hourly_limit=100, min_delay_ms=5000) is None


@pytest.mark.asyncio
async def test_zero_min_delay_skips_last_send_check(clock):
    ledger = MemoryRateLedger(clock=clock)
    limiter = RateLimiter(ledger, clock=clock)
    await limiter.log_send("u1", clock.now_ms)

    assert await limiter.check_and_plan("u1", hourly_limit=100, min_delay_ms=0) is None
    assert await ledger.get("last_sent:u1") == str(clock.now_ms)


@pytest.mark.asyncio
async def test_hourly_cap_is_checked_before_min_delay(clock):
    limiter = RateLimiter(MemoryRateLedger(clock=clock), clock=clock)
    await limiter.check_and_plan("u1", hourly_limit=1, min_delay_ms=5000)
    await limiter.log_send("u1")

    deferral = await limiter.check_and_plan("u1", hourly_limit=1, min_delay_ms=5000)
    assert deferral.reason == HOURLY_CAP


@pytest.mark.asyncio
async def test_past_hour_counters_are_evicted(clock):
    ledger = MemoryRateLedger(clock=clock)
    limiter = RateLimiter(ledger, clock=clock)

    seen = []
    for _ in range(48):
        seen.append(rate_key("u1", hour_bucket(clock.now_ms)))
        assert await limiter.check_and_plan("u1", hourly_limit=10, min_delay_ms=0) is None
        await limiter.log_send("u1")
        clock.advance(3600)

    # Only the last two buckets are still inside their TTL
    assert set(ledger._values) == {*seen[-2:], last_sent_key("u1")}
    assert set(ledger._expires_at) == set(seen[-2:])
