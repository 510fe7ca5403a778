from __future__ import annotations

from datetime import datetime, timezone

from care_notify.committer import ScheduleCommitter
from care_notify.store import InMemoryReminderStore, ReminderRecord, StoreUnavailableError


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class _FlakyStore(InMemoryReminderStore):
    def __init__(self, failing_ids: set[str]) -> None:
        super().__init__()
        self._failing_ids = failing_ids

    def update_reminder(self, reminder_id: str, **kwargs) -> None:
        if reminder_id in self._failing_ids:
            raise StoreUnavailableError(f"write to {reminder_id} timed out")
        super().update_reminder(reminder_id, **kwargs)


def _seed(store: InMemoryReminderStore) -> list[ReminderRecord]:
    records = [
        ReminderRecord(
            id="weekly-1",
            user_plant_id="plant-1",
            reminder_type="watering",
            frequency="weekly",
            reminder_time=_utc(2024, 1, 1, 9, 0),
        ),
        ReminderRecord(
            id="once-1",
            user_plant_id="plant-2",
            reminder_type="repotting",
            frequency="once",
            reminder_time=_utc(2024, 1, 1, 9, 0),
        ),
    ]
    for record in records:
        store.upsert_reminder(record)
    return records


def test_commit_advances_recurring_and_freezes_once() -> None:
    store = InMemoryReminderStore()
    records = _seed(store)
    now = _utc(2024, 1, 1, 10, 0)

    report = ScheduleCommitter(store, max_workers=2).commit(records, now)

    assert sorted(report.committed) == ["once-1", "weekly-1"]
    assert report.failures == []
    weekly = store.get_reminder("weekly-1")
    assert weekly is not None
    assert weekly.last_notification_sent == now
    assert weekly.reminder_time == _utc(2024, 1, 8, 9, 0)
    once = store.get_reminder("once-1")
    assert once is not None
    assert once.last_notification_sent == now
    assert once.reminder_time == _utc(2024, 1, 1, 9, 0)


def test_commit_failure_is_isolated_per_reminder() -> None:
    store = _FlakyStore({"weekly-1"})
    records = _seed(store)
    now = _utc(2024, 1, 1, 10, 0)

    report = ScheduleCommitter(store).commit(records, now)

    assert report.committed == ["once-1"]
    assert [failure.reminder_id for failure in report.failures] == ["weekly-1"]
    weekly = store.get_reminder("weekly-1")
    assert weekly is not None
    assert weekly.last_notification_sent is None


def test_commit_missing_reminder_is_reported() -> None:
    store = InMemoryReminderStore()
    ghost = ReminderRecord(
        id="ghost",
        user_plant_id="plant-x",
        reminder_type="custom",
        frequency="daily",
        reminder_time=_utc(2024, 1, 1, 9, 0),
    )

    report = ScheduleCommitter(store).commit([ghost], _utc(2024, 1, 1, 10, 0))

    assert report.committed == []
    assert report.failures[0].reminder_id == "ghost"


def test_commit_stores_naive_timestamps_as_utc() -> None:
    store = InMemoryReminderStore()
    records = _seed(store)

    ScheduleCommitter(store).commit(records[:1], datetime(2024, 1, 1, 10, 0))

    weekly = store.get_reminder("weekly-1")
    assert weekly is not None
    assert weekly.last_notification_sent == _utc(2024, 1, 1, 10, 0)
    assert weekly.last_notification_sent.tzinfo is not None
