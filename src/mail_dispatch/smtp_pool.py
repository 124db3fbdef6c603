# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-worker SMTP connection reuse.

Each dispatch worker runs in its own asyncio task and keeps one open SMTP
session, keyed by the task id, so consecutive sends of the same worker skip
the connect/login round trip. A pooled session is reused only if it was
opened with the same server parameters, is younger than ``ttl`` and still
answers ``NOOP``.

Example:
    Sending through the pool::

        pool = SMTPPool(ttl=300)
        smtp = await pool.get_connection("smtp.example.com", 587, "user", "pw", use_tls=True)
        await smtp.send_message(message)
        await pool.close_all()
"""

import asyncio
import time

import aiosmtplib

from .logger import get_logger

ConnectionParams = tuple[str, int, str | None, str | None, bool]

CONNECT_TIMEOUT = 15.0
NOOP_TIMEOUT = 5.0


class SMTPPool:
    """Pool of SMTP sessions, one per asyncio task.

    Attributes:
        ttl: Maximum idle age in seconds of a pooled session.
        pool: Mapping of task id to ``(smtp, last_used, params)``.
    """

    def __init__(self, ttl: int = 300):
        self.ttl = ttl
        self.pool: dict[int, tuple[aiosmtplib.SMTP, float, ConnectionParams]] = {}
        self.lock = asyncio.Lock()
        self.logger = get_logger("SMTPPool")

    async def _connect(self, params: ConnectionParams) -> aiosmtplib.SMTP:
        """Open and authenticate a new session.

        Port 465 with TLS uses implicit TLS, any other port with TLS uses
        STARTTLS.
        """
        host, port, user, password, use_tls = params
        implicit_tls = bool(use_tls and port == 465)
        smtp = aiosmtplib.SMTP(
            hostname=host,
            port=port,
            use_tls=implicit_tls,
            start_tls=bool(use_tls and not implicit_tls),
            timeout=10.0,
        )

        async def _open():
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        await asyncio.wait_for(_open(), timeout=CONNECT_TIMEOUT)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=NOOP_TIMEOUT)
        except Exception:
            return False
        return code == 250

    async def _quit(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except Exception as exc:
            self.logger.debug("Ignoring error while closing SMTP session: %s", exc)

    async def get_connection(
        self, host: str, port: int, user: str | None, password: str | None, *, use_tls: bool
    ) -> aiosmtplib.SMTP:
        """Return a live session for the current task, opening one if needed.

        Raises:
            asyncio.TimeoutError: If connecting takes too long.
            aiosmtplib.SMTPException: If connecting or authenticating fails.
        """
        task_id = id(asyncio.current_task())
        params: ConnectionParams = (host, port, user, password, use_tls)

        async with self.lock:
            entry = self.pool.pop(task_id, None)

        if entry:
            smtp, last_used, old_params = entry
            if old_params == params and (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[task_id] = (smtp, time.time(), params)
                return smtp
            await self._quit(smtp)

        smtp = await self._connect(params)
        async with self.lock:
            self.pool[task_id] = (smtp, time.time(), params)
        return smtp

    async def discard(self) -> None:
        """Drop the session of the current task, typically after a send error."""
        async with self.lock:
            entry = self.pool.pop(id(asyncio.current_task()), None)
        if entry:
            await self._quit(entry[0])

    async def cleanup(self) -> None:
        """Close sessions that are idle past ``ttl`` or no longer respond."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())

        stale: list[int] = []
        for task_id, (smtp, last_used, _params) in items:
            if (now - last_used) > self.ttl or not await self._is_alive(smtp):
                stale.append(task_id)

        for task_id in stale:
            async with self.lock:
                entry = self.pool.pop(task_id, None)
            if entry:
                await self._quit(entry[0])

    async def close_all(self) -> None:
        """Close every pooled session."""
        async with self.lock:
            entries = list(self.pool.values())
            self.pool.clear()
        for smtp, _last_used, _params in entries:
            await self._quit(smtp)
