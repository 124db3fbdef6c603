from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from conftest import HOUR_START_MS
from mail_dispatch.models import (
    HOUR_MS,
    ScheduleRequest,
    datetime_to_ms,
    hour_bucket,
    ms_to_iso,
    next_hour_ms,
    to_ms,
)


def test_time_helpers():
    assert to_ms(1.5) == 1500
    assert hour_bucket(HOUR_START_MS) == "2025-01-06T10"
    assert hour_bucket(HOUR_START_MS + HOUR_MS - 1) == "2025-01-06T10"
    assert next_hour_ms(HOUR_START_MS) == HOUR_START_MS + HOUR_MS
    assert next_hour_ms(HOUR_START_MS + 1) == HOUR_START_MS + HOUR_MS
    assert ms_to_iso(HOUR_START_MS) == "2025-01-06T10:00:00.000Z"
    assert ms_to_iso(None) is None


def test_naive_datetimes_are_utc():
    naive = datetime(2025, 1, 6, 10)
    aware = datetime(2025, 1, 6, 10, tzinfo=timezone.utc)
    assert datetime_to_ms(naive) == datetime_to_ms(aware) == HOUR_START_MS


def test_schedule_request_normalises_fields():
    request = ScheduleRequest.model_validate({
        "sender_id": " u1 ",
        "emails": [{"recipient": " a@example.com ", "extra": "ignored"}],
    })

    assert request.sender_id == "u1"
    assert request.emails[0].recipient == "a@example.com"
    assert request.emails[0].subject == ""
    assert request.min_delay_ms is None
    assert request.hourly_limit is None


def test_schedule_request_rejects_unknown_fields():
    with pytest.raises(ValidationError):
        ScheduleRequest.model_validate({"sender_id": "u1", "emails": [{"recipient": "a"}], "limit": 3})
