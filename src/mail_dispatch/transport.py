# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email delivery transports.

A transport exposes a single coroutine, ``send(recipient, subject, body)``,
that returns once the message was accepted and raises on any failure. The
worker never looks inside the transport; it only distinguishes success from
an exception.

- :class:`SMTPTransport` delivers through an SMTP relay using the shared
  :class:`~mail_dispatch.smtp_pool.SMTPPool`.
- :class:`MockTransport` only logs the message and waits a short time. It is
  used when no SMTP relay is configured and throughout the tests.
"""

from __future__ import annotations

import asyncio
from email.message import EmailMessage
from typing import Protocol, runtime_checkable

import aiosmtplib

from .logger import get_logger
from .smtp_pool import SMTPPool

SEND_TIMEOUT = 30.0


@runtime_checkable
class Transport(Protocol):
    """Capability interface of an email delivery backend."""

    async def send(self, recipient: str, subject: str, body: str) -> None: ...


def classify_smtp_error(exc: BaseException) -> tuple[bool, int | None]:
    """Classify a delivery error as temporary or permanent.

    Returns:
        tuple: (is_temporary, smtp_code)
    """
    smtp_code = None
    if isinstance(exc, aiosmtplib.SMTPException):
        smtp_code = getattr(exc, "code", None)

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True, smtp_code
    if isinstance(exc, aiosmtplib.SMTPAuthenticationError):
        return False, smtp_code
    if smtp_code:
        if 400 <= smtp_code < 500:
            return True, smtp_code
        if 500 <= smtp_code < 600:
            return False, smtp_code

    error_msg = str(exc).lower()
    for pattern in ("certificate verify failed", "wrong_version_number", "authentication failed"):
        if pattern in error_msg:
            return False, smtp_code
    # Unknown errors are retried
    return True, smtp_code


class MockTransport:
    """Transport that records messages instead of delivering them.

    Attributes:
        delay: Seconds to wait per message, simulating network latency.
        sent: ``(recipient, subject, body)`` tuples in delivery order.
    """

    def __init__(self, delay: float = 0.5, logger=None):
        self.delay = max(0.0, float(delay))
        self.sent: list[tuple[str, str, str]] = []
        self.logger = logger or get_logger("MockTransport")

    async def send(self, recipient: str, subject: str, body: str) -> None:
        self.logger.info("[mock] Sending email to %s: %s", recipient, subject)
        if self.delay:
            await asyncio.sleep(self.delay)
        self.sent.append((recipient, subject, body))

    async def close(self) -> None:
        return None


class SMTPTransport:
    """Transport delivering plain-text messages through an SMTP relay.

    Attributes:
        host: SMTP server hostname.
        port: SMTP server port.
        sender: Envelope and ``From`` address; defaults to ``user``.
        pool: Connection pool shared by the worker tasks.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str | None = None,
        password: str | None = None,
        *,
        use_tls: bool | None = None,
        sender: str | None = None,
        pool: SMTPPool | None = None,
        timeout: float = SEND_TIMEOUT,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        # Implicit TLS on 465, STARTTLS elsewhere unless explicitly disabled
        self.use_tls = self.port in (465, 587) if use_tls is None else bool(use_tls)
        self.sender = sender or user
        self.pool = pool or SMTPPool()
        self.timeout = timeout

    def build_message(self, recipient: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        if self.sender:
            msg["From"] = self.sender
        msg["To"] = recipient
        msg["Subject"] = subject
        msg.set_content(body or "")
        return msg

    async def send(self, recipient: str, subject: str, body: str) -> None:
        msg = self.build_message(recipient, subject, body)
        smtp = await self.pool.get_connection(
            self.host, self.port, self.user, self.password, use_tls=self.use_tls
        )
        try:
            await asyncio.wait_for(smtp.send_message(msg, sender=self.sender), timeout=self.timeout)
        except Exception:
            await self.pool.discard()
            raise

    async def close(self) -> None:
        await self.pool.close_all()
