# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Settings loader and component factory.

Configuration comes from an INI file (``MDS_CONFIG``, default ``config.ini``)
with environment variables as fallbacks. All variables use the ``MDS_``
prefix.

Config file sections/keys and their environment fallbacks:
  [storage]   db_path (MDS_DB_PATH)
  [server]    host (MDS_HOST), port (MDS_PORT), api_token (MDS_API_TOKEN)
  [ledger]    redis_url (MDS_REDIS_URL)
  [dispatch]  concurrency (MDS_WORKER_CONCURRENCY), min_delay_ms (MDS_MIN_DELAY_MS),
              hourly_limit (MDS_HOURLY_LIMIT), poll_interval (MDS_POLL_INTERVAL),
              lease_seconds (MDS_LEASE_SECONDS), max_attempts (MDS_MAX_ATTEMPTS),
              active (MDS_DISPATCH_ACTIVE), log_activity (MDS_LOG_DELIVERY_ACTIVITY)
  [reconcile] interval_seconds (MDS_RECONCILE_INTERVAL), after_seconds (MDS_RECONCILE_AFTER)
  [smtp]      host (MDS_SMTP_HOST), port (MDS_SMTP_PORT), user (MDS_SMTP_USER),
              password (MDS_SMTP_PASSWORD), use_tls (MDS_SMTP_USE_TLS),
              sender (MDS_SMTP_SENDER), mock_delay (MDS_MOCK_DELAY)
"""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any

from .core import DEFAULT_CONCURRENCY, MailDispatchCore
from .delayed_queue import DEFAULT_LEASE_SECONDS, DEFAULT_MAX_ATTEMPTS
from .logger import get_logger
from .models import DEFAULT_HOURLY_LIMIT, DEFAULT_MIN_DELAY_MS
from .rate_ledger import MemoryRateLedger, RedisRateLedger
from .reconcile import DEFAULT_RECONCILE_AFTER_SECONDS, DEFAULT_RECONCILE_INTERVAL
from .smtp_pool import SMTPPool
from .transport import MockTransport, SMTPTransport

DEFAULT_DB_PATH = "/data/mail_dispatch.db"


def load_settings(path: str | os.PathLike | None = None) -> dict[str, Any]:
    """Load settings from an INI file, falling back to ``MDS_*`` variables.

    Args:
        path: INI file to read; ``MDS_CONFIG`` or ``config.ini`` when omitted.
            A missing file is not an error.
    """
    config_path = Path(path or os.getenv("MDS_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return int(value)

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return float(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    settings: dict[str, Any] = {
        "db_path": get("storage", "db_path", os.getenv("MDS_DB_PATH", DEFAULT_DB_PATH)),
        "http_host": get("server", "host", os.getenv("MDS_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("MDS_PORT"), default=8000),
        "api_token": get("server", "api_token", os.getenv("MDS_API_TOKEN")),
        "redis_url": get("ledger", "redis_url", os.getenv("MDS_REDIS_URL")),
        "concurrency": get_int(
            "dispatch", "concurrency", os.getenv("MDS_WORKER_CONCURRENCY"), default=DEFAULT_CONCURRENCY
        ),
        "min_delay_ms": get_int(
            "dispatch", "min_delay_ms", os.getenv("MDS_MIN_DELAY_MS"), default=DEFAULT_MIN_DELAY_MS
        ),
        "hourly_limit": get_int(
            "dispatch", "hourly_limit", os.getenv("MDS_HOURLY_LIMIT"), default=DEFAULT_HOURLY_LIMIT
        ),
        "poll_interval": get_float("dispatch", "poll_interval", os.getenv("MDS_POLL_INTERVAL"), default=0.5),
        "lease_seconds": get_int(
            "dispatch", "lease_seconds", os.getenv("MDS_LEASE_SECONDS"), default=DEFAULT_LEASE_SECONDS
        ),
        "max_attempts": get_int(
            "dispatch", "max_attempts", os.getenv("MDS_MAX_ATTEMPTS"), default=DEFAULT_MAX_ATTEMPTS
        ),
        "active": get_bool("dispatch", "active", os.getenv("MDS_DISPATCH_ACTIVE"), default=True),
        "log_delivery_activity": get_bool(
            "dispatch", "log_activity", os.getenv("MDS_LOG_DELIVERY_ACTIVITY"), default=False
        ),
        "reconcile_interval": get_float(
            "reconcile", "interval_seconds", os.getenv("MDS_RECONCILE_INTERVAL"), default=DEFAULT_RECONCILE_INTERVAL
        ),
        "reconcile_after_seconds": get_int(
            "reconcile", "after_seconds", os.getenv("MDS_RECONCILE_AFTER"), default=DEFAULT_RECONCILE_AFTER_SECONDS
        ),
        "smtp_host": get("smtp", "host", os.getenv("MDS_SMTP_HOST")),
        "smtp_port": get_int("smtp", "port", os.getenv("MDS_SMTP_PORT"), default=587),
        "smtp_user": get("smtp", "user", os.getenv("MDS_SMTP_USER")),
        "smtp_password": get("smtp", "password", os.getenv("MDS_SMTP_PASSWORD")),
        "smtp_use_tls": get_bool("smtp", "use_tls", os.getenv("MDS_SMTP_USE_TLS")),
        "smtp_sender": get("smtp", "sender", os.getenv("MDS_SMTP_SENDER")),
        "mock_delay": get_float("smtp", "mock_delay", os.getenv("MDS_MOCK_DELAY"), default=0.5),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    for key in ("api_token", "redis_url", "smtp_host"):
        value = settings.get(key)
        if isinstance(value, str):
            value = value.strip() or None
        settings[key] = value
    return settings


def build_core(settings: dict[str, Any], **overrides: Any) -> MailDispatchCore:
    """Assemble a :class:`MailDispatchCore` from loaded settings.

    Uses the Redis ledger when ``redis_url`` is set and the SMTP transport
    when ``smtp_host`` is set; in-process and mock counterparts otherwise.
    Keyword overrides are passed to the core unchanged.
    """
    logger = get_logger()
    if settings.get("redis_url"):
        ledger = RedisRateLedger.from_url(settings["redis_url"])
    else:
        ledger = MemoryRateLedger()

    if settings.get("smtp_host"):
        transport = SMTPTransport(
            settings["smtp_host"],
            int(settings.get("smtp_port") or 587),
            settings.get("smtp_user"),
            settings.get("smtp_password"),
            use_tls=settings.get("smtp_use_tls"),
            sender=settings.get("smtp_sender"),
            pool=SMTPPool(),
        )
    else:
        logger.info("No SMTP host configured, emails are only logged")
        transport = MockTransport(delay=float(settings.get("mock_delay") or 0.0))

    core_kwargs: dict[str, Any] = dict(
        db_path=settings.get("db_path") or DEFAULT_DB_PATH,
        ledger=ledger,
        transport=transport,
        concurrency=settings.get("concurrency") or DEFAULT_CONCURRENCY,
        start_active=bool(settings.get("active", True)),
        poll_interval=settings.get("poll_interval") or 0.5,
        lease_seconds=settings.get("lease_seconds") or DEFAULT_LEASE_SECONDS,
        max_attempts=settings.get("max_attempts") or DEFAULT_MAX_ATTEMPTS,
        default_min_delay_ms=(
            DEFAULT_MIN_DELAY_MS if settings.get("min_delay_ms") is None else settings["min_delay_ms"]
        ),
        default_hourly_limit=settings.get("hourly_limit") or DEFAULT_HOURLY_LIMIT,
        reconcile_interval=(
            DEFAULT_RECONCILE_INTERVAL if settings.get("reconcile_interval") is None else settings["reconcile_interval"]
        ),
        reconcile_after_seconds=(
            DEFAULT_RECONCILE_AFTER_SECONDS
            if settings.get("reconcile_after_seconds") is None
            else settings["reconcile_after_seconds"]
        ),
        log_delivery_activity=bool(settings.get("log_delivery_activity")),
    )
    core_kwargs.update(overrides)
    return MailDispatchCore(**core_kwargs)
