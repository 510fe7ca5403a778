from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from care_notify.cadence import coerce_utc, interval_for, is_due, is_terminal, next_due


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_weekly_reminder_due_on_first_window_and_advances_one_week() -> None:
    reminder_time = _utc(2024, 1, 1, 9, 0)
    now = _utc(2024, 1, 1, 10, 0)

    assert is_due("weekly", reminder_time, None, now) is True
    assert next_due("weekly", reminder_time, now) == _utc(2024, 1, 8, 9, 0)


def test_weekly_reminder_not_due_again_within_interval() -> None:
    reminder_time = _utc(2024, 1, 8, 9, 0)
    last_sent = _utc(2024, 1, 1, 10, 0)

    assert is_due("weekly", reminder_time, last_sent, _utc(2024, 1, 5, 9, 0)) is False
    assert is_due("weekly", reminder_time, last_sent, _utc(2024, 1, 8, 10, 0)) is True


def test_once_reminder_lifecycle() -> None:
    reminder_time = _utc(2024, 1, 1, 9, 0)

    assert is_due("once", reminder_time, None, _utc(2024, 1, 1, 8, 0)) is False
    assert is_due("once", reminder_time, None, _utc(2024, 1, 1, 10, 0)) is True

    sent_at = _utc(2024, 1, 1, 10, 0)
    for later in (_utc(2024, 1, 1, 11, 0), _utc(2024, 6, 1, 9, 0), _utc(2030, 1, 1, 0, 0)):
        assert is_due("once", reminder_time, sent_at, later) is False
    assert next_due("once", reminder_time, sent_at) is None
    assert is_terminal("once", sent_at) is True
    assert is_terminal("once", None) is False


@pytest.mark.parametrize("frequency", ["daily", "weekly", "biweekly", "monthly"])
def test_next_due_is_strictly_after_now_after_many_missed_cycles(frequency: str) -> None:
    reminder_time = _utc(2019, 3, 10, 7, 30, 15)
    now = _utc(2024, 6, 15, 12, 0)

    result = next_due(frequency, reminder_time, now)

    assert result is not None
    assert result > now
    assert result - now <= interval_for(frequency)
    assert (result.hour, result.minute, result.second) == (7, 30, 15)


def test_next_due_when_projection_equals_now_moves_forward() -> None:
    now = _utc(2024, 2, 1, 9, 0)

    assert next_due("daily", _utc(2024, 1, 1, 9, 0), now) == _utc(2024, 2, 2, 9, 0)


def test_monthly_uses_fixed_thirty_day_interval() -> None:
    last_sent = _utc(2024, 1, 31, 9, 0)

    assert is_due("monthly", _utc(2024, 1, 31, 9, 0), last_sent, _utc(2024, 2, 29, 9, 0)) is False
    assert is_due("monthly", _utc(2024, 1, 31, 9, 0), last_sent, _utc(2024, 3, 1, 9, 0)) is True
    assert interval_for("monthly") == timedelta(days=30)


def test_naive_timestamps_are_treated_as_utc() -> None:
    naive_time = datetime(2024, 1, 1, 9, 0)

    assert is_due("daily", naive_time, None, _utc(2024, 1, 1, 9, 0)) is True
    assert next_due("daily", naive_time, datetime(2024, 1, 1, 10, 0)) == _utc(2024, 1, 2, 9, 0)


def test_non_utc_offsets_are_normalized() -> None:
    plus_two = timezone(timedelta(hours=2))
    reminder_time = datetime(2024, 1, 1, 11, 0, tzinfo=plus_two)

    assert is_due("daily", reminder_time, None, _utc(2024, 1, 1, 8, 59)) is False
    assert is_due("daily", reminder_time, None, _utc(2024, 1, 1, 9, 0)) is True
    assert next_due("daily", reminder_time, _utc(2024, 1, 1, 10, 0)) == _utc(2024, 1, 2, 9, 0)


@pytest.mark.parametrize("frequency", ["hourly", "", None])
def test_unknown_frequency_is_never_due_and_terminal(frequency: str | None) -> None:
    reminder_time = _utc(2024, 1, 1, 9, 0)

    assert is_due(frequency, reminder_time, None, _utc(2025, 1, 1)) is False
    assert next_due(frequency, reminder_time, _utc(2025, 1, 1)) is None
    assert interval_for(frequency) is None
    assert is_terminal(frequency, None) is True


def test_frequency_matching_ignores_case_and_whitespace() -> None:
    assert is_due(" Weekly ", _utc(2024, 1, 1, 9, 0), None, _utc(2024, 1, 1, 9, 0)) is True
    assert interval_for("DAILY") == timedelta(days=1)


def test_coerce_utc_treats_naive_values_as_utc_and_converts_aware_ones() -> None:
    plus_two = timezone(timedelta(hours=2))

    assert coerce_utc(datetime(2024, 1, 1, 9, 0)) == _utc(2024, 1, 1, 9, 0)
    assert coerce_utc(datetime(2024, 1, 1, 11, 0, tzinfo=plus_two)).hour == 9
    assert coerce_utc(datetime(2024, 1, 1, 11, 0, tzinfo=plus_two)).tzinfo == timezone.utc
