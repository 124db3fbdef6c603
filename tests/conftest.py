import types
from datetime import datetime, timezone

import pytest

# 2025-01-06T10:15:00Z
START = datetime(2025, 1, 6, 10, 15, tzinfo=timezone.utc).timestamp()
HOUR_START_MS = int(datetime(2025, 1, 6, 10, tzinfo=timezone.utc).timestamp() * 1000)


class FakeClock:
    """Controllable replacement for ``time.time``."""

    def __init__(self, start: float = START):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    @property
    def now_ms(self) -> int:
        return int(self.now * 1000)


class RecordingTransport:
    def __init__(self, failures: int = 0, error: Exception | None = None):
        self.sent = []
        self.attempts = 0
        self.failures = failures
        self.error = error or RuntimeError("connection refused")

    async def send(self, recipient, subject, body):
        self.attempts += 1
        if self.failures:
            self.failures -= 1
            raise self.error
        self.sent.append((recipient, subject, body))


def quiet_logger():
    return types.SimpleNamespace(
        warning=lambda *args, **kwargs: None,
        error=lambda *args, **kwargs: None,
        exception=lambda *args, **kwargs: None,
        info=lambda *args, **kwargs: None,
        debug=lambda *args, **kwargs: None,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "dispatch.db")
