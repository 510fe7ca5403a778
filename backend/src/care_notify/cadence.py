from __future__ import annotations

from datetime import datetime, timedelta, timezone

from .models import Frequency

ONCE: Frequency = "once"

FREQUENCY_INTERVALS: dict[str, timedelta] = {
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
    "biweekly": timedelta(days=14),
    # Fixed approximation, not calendar months.
    "monthly": timedelta(days=30),
}


def coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize_frequency(frequency: str | None) -> str:
    return (frequency or "").strip().lower()


def interval_for(frequency: str | None) -> timedelta | None:
    return FREQUENCY_INTERVALS.get(_normalize_frequency(frequency))


def is_terminal(frequency: str | None, last_sent: datetime | None) -> bool:
    """A one-time reminder that already fired, or one with an unknown cadence."""
    normalized = _normalize_frequency(frequency)
    if normalized == ONCE:
        return last_sent is not None
    return normalized not in FREQUENCY_INTERVALS


def is_due(
    frequency: str | None,
    reminder_time: datetime,
    last_sent: datetime | None,
    now: datetime,
) -> bool:
    normalized = _normalize_frequency(frequency)
    current = coerce_utc(now)

    if normalized == ONCE:
        return last_sent is None and current >= coerce_utc(reminder_time)

    interval = FREQUENCY_INTERVALS.get(normalized)
    if interval is None:
        return False
    if last_sent is None:
        return current >= coerce_utc(reminder_time)
    return current - coerce_utc(last_sent) >= interval


def next_due(frequency: str | None, reminder_time: datetime, now: datetime) -> datetime | None:
    """Next fire time for a recurring reminder, or None when it is terminal.

    The UTC time-of-day of ``reminder_time`` is projected onto the date of
    ``now`` and pushed forward by whole intervals until it is strictly after
    ``now``, so a sweep that ran after a long outage does not schedule an
    immediate re-fire.
    """
    interval = interval_for(frequency)
    if interval is None:
        return None

    current = coerce_utc(now)
    anchor = coerce_utc(reminder_time)
    candidate = current.replace(
        hour=anchor.hour,
        minute=anchor.minute,
        second=anchor.second,
        microsecond=0,
    )
    if candidate <= current:
        missed = (current - candidate) // interval + 1
        candidate += interval * missed
    return candidate
