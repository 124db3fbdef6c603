import pytest

from mail_dispatch.config import DEFAULT_DB_PATH, build_core, load_settings
from mail_dispatch.rate_ledger import MemoryRateLedger, RedisRateLedger
from mail_dispatch.transport import MockTransport, SMTPTransport

ENV_VARS = [
    "MDS_CONFIG", "MDS_DB_PATH", "MDS_HOST", "MDS_PORT", "MDS_API_TOKEN", "MDS_REDIS_URL",
    "MDS_WORKER_CONCURRENCY", "MDS_MIN_DELAY_MS", "MDS_HOURLY_LIMIT", "MDS_POLL_INTERVAL",
    "MDS_LEASE_SECONDS", "MDS_MAX_ATTEMPTS", "MDS_DISPATCH_ACTIVE", "MDS_LOG_DELIVERY_ACTIVITY",
    "MDS_RECONCILE_INTERVAL", "MDS_RECONCILE_AFTER", "MDS_SMTP_HOST", "MDS_SMTP_PORT",
    "MDS_SMTP_USER", "MDS_SMTP_PASSWORD", "MDS_SMTP_USE_TLS", "MDS_SMTP_SENDER", "MDS_MOCK_DELAY",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MDS_CONFIG", str(tmp_path / "missing.ini"))


def test_defaults_without_file():
    settings = load_settings()

    assert settings["db_path"] == DEFAULT_DB_PATH
    assert settings["http_port"] == 8000
    assert settings["api_token"] is None
    assert settings["redis_url"] is None
    assert settings["concurrency"] == 5
    assert settings["min_delay_ms"] == 2000
    assert settings["hourly_limit"] == 200
    assert settings["lease_seconds"] == 300
    assert settings["max_attempts"] == 5
    assert settings["active"] is True
    assert settings["reconcile_interval"] == 300
    assert settings["reconcile_after_seconds"] == 600
    assert settings["smtp_host"] is None


def test_file_values_override_environment(tmp_path, monkeypatch):
    config = tmp_path / "dispatch.ini"
    config.write_text(
        "[storage]\ndb_path = /tmp/from-file.db\n"
        "[server]\nport = 9001\napi_token = secret\n"
        "[dispatch]\nhourly_limit = 50\nmin_delay_ms = 0\nactive = off\n"
        "[smtp]\nhost = smtp.example.com\nport = 465\nuse_tls = yes\n"
    )
    monkeypatch.setenv("MDS_HOURLY_LIMIT", "10")
    monkeypatch.setenv("MDS_WORKER_CONCURRENCY", "8")

    settings = load_settings(config)

    assert settings["db_path"] == "/tmp/from-file.db"
    assert settings["http_port"] == 9001
    assert settings["api_token"] == "secret"
    assert settings["hourly_limit"] == 50
    assert settings["min_delay_ms"] == 0
    assert settings["concurrency"] == 8
    assert settings["active"] is False
    assert settings["smtp_host"] == "smtp.example.com"
    assert settings["smtp_port"] == 465
    assert settings["smtp_use_tls"] is True


def test_blank_values_become_none(monkeypatch):
    monkeypatch.setenv("MDS_API_TOKEN", "  ")
    monkeypatch.setenv("MDS_REDIS_URL", "")
    monkeypatch.setenv("MDS_PORT", "")

    settings = load_settings()

    assert settings["api_token"] is None
    assert settings["redis_url"] is None
    assert settings["http_port"] == 8000


def test_build_core_uses_mock_transport_and_memory_ledger(tmp_path):
    settings = load_settings()
    settings["db_path"] = str(tmp_path / "core.db")
    settings["min_delay_ms"] = 0

    core = build_core(settings, concurrency=2)

    assert isinstance(core.ledger, MemoryRateLedger)
    assert isinstance(core.transport, MockTransport)
    assert core.enqueuer.default_min_delay_ms == 0
    assert core.store.db_path == str(tmp_path / "core.db")


def test_build_core_uses_smtp_and_redis(tmp_path, monkeypatch):
    monkeypatch.setattr(
        "mail_dispatch.rate_ledger.redis_asyncio.from_url",
        lambda url, decode_responses=False: {"url": url},
    )
    settings = load_settings()
    settings.update(
        db_path=str(tmp_path / "core.db"),
        redis_url="redis://cache:6379/0",
        smtp_host="smtp.example.com",
        smtp_port=2525,
        smtp_user="user",
        smtp_sender="news@example.com",
    )

    core = build_core(settings)

    assert isinstance(core.ledger, RedisRateLedger)
    assert isinstance(core.transport, SMTPTransport)
    assert core.transport.port == 2525
    assert core.transport.use_tls is False
    assert core.transport.sender == "news@example.com"
