import asyncio

import aiosmtplib
import pytest

from conftest import quiet_logger
from mail_dispatch.transport import MockTransport, SMTPTransport, Transport, classify_smtp_error


class DummyConnection:
    def __init__(self, error=None):
        self.messages = []
        self.error = error

    async def send_message(self, msg, sender=None):
        if self.error:
            raise self.error
        self.messages.append((msg, sender))


class DummyPool:
    def __init__(self, connection):
        self.connection = connection
        self.requests = []
        self.discarded = 0
        self.closed = False

    async def get_connection(self, host, port, user, password, *, use_tls):
        self.requests.append((host, port, user, password, use_tls))
        return self.connection

    async def discard(self):
        self.discarded += 1

    async def close_all(self):
        self.closed = True


@pytest.mark.parametrize(
    "exc, expected",
    [
        (asyncio.TimeoutError(), (True, None)),
        (ConnectionRefusedError("refused"), (True, None)),
        (aiosmtplib.SMTPAuthenticationError(535, "bad credentials"), (False, 535)),
        (aiosmtplib.SMTPResponseException(451, "try again later"), (True, 451)),
        (aiosmtplib.SMTPResponseException(550, "mailbox unavailable"), (False, 550)),
        (RuntimeError("[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed"), (False, None)),
        (RuntimeError("something odd"), (True, None)),
    ],
)
def test_classify_smtp_error(exc, expected):
    assert classify_smtp_error(exc) == expected


@pytest.mark.asyncio
async def test_mock_transport_records_messages():
    transport = MockTransport(delay=0, logger=quiet_logger())

    await transport.send("a@example.com", "Hi", "Body")
    await transport.close()

    assert transport.sent == [("a@example.com", "Hi", "Body")]
    assert isinstance(transport, Transport)


def test_smtp_transport_defaults():
    assert SMTPTransport("smtp.local", 587).use_tls is True
    assert SMTPTransport("smtp.local", 465).use_tls is True
    assert SMTPTransport("smtp.local", 25).use_tls is False
    assert SMTPTransport("smtp.local", 25, use_tls=True).use_tls is True
    assert SMTPTransport("smtp.local", 587, "me@example.com").sender == "me@example.com"


@pytest.mark.asyncio
async def test_smtp_transport_sends_through_pool():
    connection = DummyConnection()
    pool = DummyPool(connection)
    transport = SMTPTransport("smtp.local", 587, "user", "pw", sender="news@example.com", pool=pool)

    await transport.send("a@example.com", "Hello", "Plain body")

    assert pool.requests == [("smtp.local", 587, "user", "pw", True)]
    [(msg, sender)] = connection.messages
    assert sender == "news@example.com"
    assert msg["From"] == "news@example.com"
    assert msg["To"] == "a@example.com"
    assert msg["Subject"] == "Hello"
    assert msg.get_content().strip() == "Plain body"
    assert pool.discarded == 0


@pytest.mark.asyncio
async def test_smtp_transport_discards_session_on_error():
    pool = DummyPool(DummyConnection(error=aiosmtplib.SMTPServerDisconnected("gone")))
    transport = SMTPTransport("smtp.local", 25, pool=pool)

    with pytest.raises(aiosmtplib.SMTPServerDisconnected):
        await transport.send("a@example.com", "Hello", "Body")
    assert pool.discarded == 1

    await transport.close()
    assert pool.closed is True
