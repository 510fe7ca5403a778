from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from .cadence import coerce_utc, next_due
from .store import ReminderNotFoundError, ReminderRecord, ReminderStore, StoreUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommitFailure:
    reminder_id: str
    error: str


@dataclass
class CommitReport:
    committed: list[str] = field(default_factory=list)
    failures: list[CommitFailure] = field(default_factory=list)


class ScheduleCommitter:
    """Persists the sent timestamp and the next fire time for each dispatched reminder."""

    def __init__(self, store: ReminderStore, *, max_workers: int = 4, timeout_seconds: float = 10) -> None:
        self._store = store
        self._max_workers = max(1, max_workers)
        self._timeout_seconds = timeout_seconds

    def commit(self, reminders: Sequence[ReminderRecord], now: datetime) -> CommitReport:
        report = CommitReport()
        if not reminders:
            return report

        sent_at = coerce_utc(now)
        executor = ThreadPoolExecutor(max_workers=min(self._max_workers, len(reminders)), thread_name_prefix="commit")
        try:
            futures = [executor.submit(self._commit_one, reminder, sent_at) for reminder in reminders]
            for reminder, future in zip(reminders, futures):
                try:
                    future.result(timeout=self._timeout_seconds)
                except FutureTimeoutError:
                    future.cancel()
                    self._record_failure(report, reminder.id, f"commit timed out after {self._timeout_seconds}s")
                    continue
                except (StoreUnavailableError, ReminderNotFoundError) as exc:
                    self._record_failure(report, reminder.id, str(exc))
                    continue
                except Exception as exc:  # noqa: BLE001
                    logger.exception("commit for reminder %s raised unexpectedly", reminder.id)
                    self._record_failure(report, reminder.id, str(exc))
                    continue
                report.committed.append(reminder.id)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return report

    def _commit_one(self, reminder: ReminderRecord, sent_at: datetime) -> None:
        self._store.update_reminder(
            reminder.id,
            last_notification_sent=sent_at,
            # None leaves reminder_time untouched, which is what one-time reminders need.
            reminder_time=next_due(reminder.frequency, reminder.reminder_time, sent_at),
        )

    @staticmethod
    def _record_failure(report: CommitReport, reminder_id: str, error: str) -> None:
        logger.error("failed to commit schedule for reminder %s: %s", reminder_id, error)
        report.failures.append(CommitFailure(reminder_id=reminder_id, error=error))
