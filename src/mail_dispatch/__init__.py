# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Time-scheduled bulk email dispatcher with per-sender rate limiting.

This package delivers batches of outbound emails at a caller-specified time
while enforcing, for every sender:

- a minimum delay between two consecutive sends
- a cap on the number of sends within one clock hour

Each logical email is attempted at most once from the dispatcher's point of
view, even when workers restart, the same job is submitted twice or several
workers run concurrently. The SQLite job store is the source of truth for
idempotency; a SQLite-backed delayed queue hands due jobs to a pool of
asyncio workers; a shared rate ledger (in-memory or Redis) holds the
per-sender counters.

Example:
    Scheduling a batch and serving the HTTP API::

        from mail_dispatch.core import MailDispatchCore
        from mail_dispatch.api import create_app

        core = MailDispatchCore(db_path="/data/mail_dispatch.db", start_active=True)
        app = create_app(core, api_token="secret")

        await core.handle_command("schedule", {
            "sender_id": "u1",
            "emails": [{"recipient": "a@example.com", "subject": "Hi", "body": "..."}],
        })
"""

__version__ = "0.1.0"
