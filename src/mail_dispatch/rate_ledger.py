# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Shared per-sender counters used by the rate limiter.

The ledger is a small capability interface rather than a concrete store:

- ``increment_and_get(key)``: atomic read-modify-write, never under-counts
  across concurrent workers
- ``set_expiry(key, ttl)``: bound the lifetime of a counter
- ``get(key)`` / ``set(key, value)``: plain last-writer-wins values

Two implementations are provided. :class:`MemoryRateLedger` serves
single-process deployments and tests; :class:`RedisRateLedger` lets several
dispatcher processes share the same counters.

Example:
    Choosing a ledger::

        ledger = RedisRateLedger.from_url("redis://localhost:6379/0")
        count = await ledger.increment_and_get("email_rate:u1:2025-01-01T10")
        if count == 1:
            await ledger.set_expiry("email_rate:u1:2025-01-01T10", 7200)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from redis import asyncio as redis_asyncio


@runtime_checkable
class RateLedger(Protocol):
    """Capability interface for shared low-latency counters."""

    async def increment_and_get(self, key: str) -> int: ...

    async def set_expiry(self, key: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...


class MemoryRateLedger:
    """In-process ledger guarded by an asyncio lock.

    Expired keys are dropped on access, and every write evicts all keys past
    their deadline.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._values: dict[str, str] = {}
        self._expires_at: dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _purge_if_expired(self, key: str) -> None:
        deadline = self._expires_at.get(key)
        if deadline is not None and deadline <= self._clock():
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    def _purge_expired(self) -> None:
        now = self._clock()
        for key in [k for k, deadline in self._expires_at.items() if deadline <= now]:
            self._values.pop(key, None)
            del self._expires_at[key]

    async def increment_and_get(self, key: str) -> int:
        async with self._lock:
            self._purge_expired()
            value = int(self._values.get(key, "0")) + 1
            self._values[key] = str(value)
            return value

    async def set_expiry(self, key: str, ttl_seconds: int) -> None:
        async with self._lock:
            self._purge_expired()
            if key in self._values:
                self._expires_at[key] = self._clock() + ttl_seconds

    async def get(self, key: str) -> str | None:
        async with self._lock:
            self._purge_if_expired(key)
            return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            self._purge_expired()
            self._values[key] = str(value)
            self._expires_at.pop(key, None)

    async def close(self) -> None:
        return None


class RedisRateLedger:
    """Ledger stored in Redis, shared by every dispatcher process.

    Attributes:
        client: A ``redis.asyncio`` client created with ``decode_responses=True``.
    """

    def __init__(self, client: Any):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> RedisRateLedger:
        """Build a ledger from a ``redis://`` URL."""
        return cls(redis_asyncio.from_url(url, decode_responses=True))

    async def increment_and_get(self, key: str) -> int:
        return int(await self.client.incr(key))

    async def set_expiry(self, key: str, ttl_seconds: int) -> None:
        await self.client.expire(key, int(ttl_seconds))

    async def get(self, key: str) -> str | None:
        value = await self.client.get(key)
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def set(self, key: str, value: str) -> None:
        await self.client.set(key, str(value))

    async def close(self) -> None:
        await self.client.aclose()
