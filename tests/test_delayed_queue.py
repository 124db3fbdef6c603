import pytest

from conftest import quiet_logger
from mail_dispatch.delayed_queue import (
    DEFAULT_RETRY_DELAYS,
    DelayedQueue,
    calculate_retry_delay,
)
from mail_dispatch.errors import LeaseMismatch


async def make_queue(db_path, clock, **kwargs) -> DelayedQueue:
    queue = DelayedQueue(db_path, clock=clock, logger=quiet_logger(), **kwargs)
    await queue.init_db()
    return queue


def entry(entry_id, due_ms, **payload):
    return {"id": entry_id, "due_ms": due_ms, "payload": {"email_id": entry_id, **payload}}


def test_calculate_retry_delay():
    assert calculate_retry_delay(0) == 60
    assert calculate_retry_delay(2) == 900
    assert calculate_retry_delay(10) == DEFAULT_RETRY_DELAYS[-1]
    assert calculate_retry_delay(1, [5, 10]) == 10


@pytest.mark.asyncio
async def test_submit_bulk_ignores_known_ids(db_path, clock):
    queue = await make_queue(db_path, clock)

    assert await queue.submit_bulk([entry("a", clock.now_ms), entry("b", clock.now_ms)]) == ["a", "b"]
    assert await queue.submit_bulk([entry("a", clock.now_ms + 5), entry("c", clock.now_ms)]) == ["c"]
    assert await queue.submit_bulk([]) == []

    stored = await queue.get("a")
    assert stored["due_ms"] == clock.now_ms
    assert stored["payload"] == {"email_id": "a"}
    assert await queue.counts() == {"delayed": 3}


@pytest.mark.asyncio
async def test_dequeue_releases_due_entries_in_due_order(db_path, clock):
    queue = await make_queue(db_path, clock)
    await queue.submit_bulk([
        entry("later", clock.now_ms + 10_000),
        entry("second", clock.now_ms),
        entry("first", clock.now_ms - 1000),
    ])

    first = await queue.dequeue()
    second = await queue.dequeue()
    assert (first.id, second.id) == ("first", "second")
    assert first.lease.token != second.lease.token
    assert first.lease.attempt == 0
    assert await queue.dequeue() is None

    clock.advance(10)
    later = await queue.dequeue()
    assert later.id == "later"
    assert later.payload == {"email_id": "later"}


@pytest.mark.asyncio
async def test_reinsert_keeps_identity_and_invalidates_lease(db_path, clock):
    queue = await make_queue(db_path, clock)
    await queue.submit_bulk([entry("a", clock.now_ms)])
    job = await queue.dequeue()
    correlation_id = job.lease.correlation_id

    await queue.reinsert(job.lease, clock.now_ms + 5000)
    with pytest.raises(LeaseMismatch):
        await queue.complete(job.lease)
    assert await queue.dequeue() is None
    # Re-submitting the id while it waits is still a no-op
    assert await queue.submit_bulk([entry("a", clock.now_ms)]) == []

    clock.advance(5)
    again = await queue.dequeue()
    assert again.id == "a"
    assert again.lease.correlation_id == correlation_id
    await queue.complete(again.lease)
    assert (await queue.get("a"))["state"] == "completed"


@pytest.mark.asyncio
async def test_expired_lease_is_reclaimed(db_path, clock):
    queue = await make_queue(db_path, clock, lease_seconds=30)
    await queue.submit_bulk([entry("a", clock.now_ms)])
    stale = await queue.dequeue()
    assert await queue.dequeue() is None

    clock.advance(30)
    fresh = await queue.dequeue()
    assert fresh.id == "a"
    assert fresh.lease.token != stale.lease.token
    with pytest.raises(LeaseMismatch):
        await queue.reinsert(stale.lease, clock.now_ms)
    await queue.complete(fresh.lease)


@pytest.mark.asyncio
async def test_fail_applies_backoff_then_gives_up(db_path, clock):
    queue = await make_queue(db_path, clock, max_attempts=2, retry_delays=[60, 300])
    await queue.submit_bulk([entry("a", clock.now_ms)])

    job = await queue.dequeue()
    retry_ms = await queue.fail(job.lease, "timeout")
    assert retry_ms == clock.now_ms + 60_000
    stored = await queue.get("a")
    assert (stored["state"], stored["attempts"], stored["last_error"]) == ("delayed", 1, "timeout")

    clock.advance(59)
    assert await queue.dequeue() is None
    clock.advance(1)
    job = await queue.dequeue()
    assert job.lease.attempt == 1

    assert await queue.fail(job.lease, "timeout again") is None
    stored = await queue.get("a")
    assert (stored["state"], stored["attempts"]) == ("failed", 2)
    clock.advance(10_000)
    assert await queue.dequeue() is None


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(db_path, clock):
    queue = await make_queue(db_path, clock)
    await queue.submit_bulk([entry("a", clock.now_ms)])
    job = await queue.dequeue()

    assert await queue.fail(job.lease, "535 auth failed", permanent=True) is None
    assert (await queue.get("a"))["state"] == "failed"


@pytest.mark.asyncio
async def test_remove_only_cancels_waiting_entries(db_path, clock):
    queue = await make_queue(db_path, clock)
    await queue.submit_bulk([entry("waiting", clock.now_ms + 60_000), entry("busy", clock.now_ms)])
    busy = await queue.dequeue()

    assert await queue.remove("waiting") is True
    assert await queue.remove("busy") is False
    assert await queue.remove("unknown") is False
    assert await queue.contains("waiting") is True
    assert await queue.contains("unknown") is False

    clock.advance(120)
    assert await queue.dequeue() is None
    await queue.complete(busy.lease)
    assert await queue.counts() == {"cancelled": 1, "completed": 1}
    assert await queue.count_pending() == 0
