# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Data models shared by the dispatch engine.

This module defines the status vocabularies of the job store, the pydantic
models used to validate schedule requests, and the small value objects that
travel between the delayed queue and the workers.

Models:
    - EmailStatus / JobStatus: persisted lifecycle states
    - EmailEntry / ScheduleRequest: validated enqueue input
    - DeliveryLease / QueueJob: what a worker receives from the queue
    - Deferral / DispatchOutcome: results of one processing attempt
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

HOUR_MS = 3_600_000

# Defaults applied when a campaign does not override them
DEFAULT_MIN_DELAY_MS = 2000
DEFAULT_HOURLY_LIMIT = 200


class EmailStatus(str, Enum):
    """Delivery status of an Email row. ``SENT`` is terminal."""

    SCHEDULED = "SCHEDULED"
    SENDING = "SENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class JobStatus(str, Enum):
    """Dispatch status of the EmailJob companion row."""

    QUEUED = "QUEUED"
    SENDING = "SENDING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class DispatchOutcome(str, Enum):
    """What happened to a dequeued job."""

    SENT = "sent"
    DEFERRED = "deferred"
    SKIPPED = "skipped"
    FAILED = "failed"


class EmailEntry(BaseModel):
    """One message of a schedule request."""

    model_config = ConfigDict(extra="ignore")

    recipient: Annotated[str, Field(min_length=1, max_length=254, description="Recipient address")]
    subject: Annotated[str, Field(default="", max_length=998, description="Subject line")]
    body: Annotated[str, Field(default="", description="Plain text body")]

    @field_validator("recipient")
    @classmethod
    def recipient_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("recipient must not be blank")
        return v


class ScheduleRequest(BaseModel):
    """A batch of emails for one sender, with optional campaign settings."""

    model_config = ConfigDict(extra="forbid")

    sender_id: Annotated[str, Field(min_length=1, max_length=128, description="Owning account")]
    emails: Annotated[list[EmailEntry], Field(min_length=1, description="Ordered messages")]
    scheduled_at: Annotated[
        datetime | None,
        Field(default=None, description="Earliest send time (defaults to now)")
    ]
    min_delay_ms: Annotated[
        int | None,
        Field(default=None, ge=0, description="Minimum delay between two sends of this sender")
    ]
    hourly_limit: Annotated[
        int | None,
        Field(default=None, ge=1, description="Maximum sends of this sender per clock hour")
    ]

    @field_validator("sender_id")
    @classmethod
    def sender_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("sender_id must not be blank")
        return v


@dataclass(frozen=True)
class DeliveryLease:
    """Handle on one in-flight delivery attempt.

    A lease is issued by :meth:`DelayedQueue.dequeue` and must be presented to
    re-delay, complete or fail the job, so a deferral can never create a
    second logical job.

    Attributes:
        entry_id: Queue entry id (equal to the Email id).
        token: Random token identifying this attempt.
        correlation_id: Queue-issued id recorded on the EmailJob for tracing.
        attempt: Number of failed delivery attempts before this one.
    """

    entry_id: str
    token: str
    correlation_id: str
    attempt: int = 0


@dataclass
class QueueJob:
    """A due job handed to a worker."""

    id: str
    payload: dict[str, Any]
    lease: DeliveryLease
    due_ms: int = 0


@dataclass(frozen=True)
class Deferral:
    """A rate or delay constraint postponing a job until ``until_ms``."""

    reason: str
    until_ms: int
    detail: dict[str, Any] = field(default_factory=dict)


# Time helpers -----------------------------------------------------------------

def to_ms(seconds: float) -> int:
    """Convert epoch seconds to integer epoch milliseconds."""
    return int(seconds * 1000)


def datetime_to_ms(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds; naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def ms_to_iso(value_ms: int | None) -> str | None:
    """Render epoch milliseconds as an ISO-8601 UTC string."""
    if value_ms is None:
        return None
    return (
        datetime.fromtimestamp(value_ms / 1000, timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def hour_bucket(now_ms: int) -> str:
    """Return the UTC hour bucket key (``YYYY-MM-DDTHH``) containing ``now_ms``."""
    return datetime.fromtimestamp(now_ms / 1000, timezone.utc).strftime("%Y-%m-%dT%H")


def next_hour_ms(now_ms: int) -> int:
    """Return the start of the hour bucket following the one containing ``now_ms``."""
    return (now_ms // HOUR_MS + 1) * HOUR_MS
