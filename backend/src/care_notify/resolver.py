from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from .cadence import is_due
from .store import DeliveryTarget, ReminderRecord, ReminderStore

logger = logging.getLogger(__name__)

TARGET_UNRESOLVED = "target_unresolved"
LEASE_HELD = "lease_held"
ALREADY_ADVANCED = "already_advanced"


@dataclass(frozen=True)
class DueReminder:
    reminder: ReminderRecord
    target: DeliveryTarget


@dataclass(frozen=True)
class SkippedReminder:
    reminder_id: str
    reason: str


@dataclass(frozen=True)
class TargetResolution:
    resolved: list[DueReminder]
    skipped: list[SkippedReminder]


class DueSetResolver:
    """Selects due reminders and binds each to a delivery target without mutating state."""

    def __init__(self, store: ReminderStore) -> None:
        self._store = store

    def select_due(self, reminders: Sequence[ReminderRecord], now: datetime) -> list[ReminderRecord]:
        return [
            reminder
            for reminder in reminders
            if is_due(reminder.frequency, reminder.reminder_time, reminder.last_notification_sent, now)
        ]

    def resolve_targets(self, reminders: Sequence[ReminderRecord]) -> TargetResolution:
        resolved: list[DueReminder] = []
        skipped: list[SkippedReminder] = []
        for reminder in reminders:
            target = self._store.resolve_target(reminder)
            if target is None or not target.push_token.strip():
                logger.info("reminder %s skipped: no push token for plant %s", reminder.id, reminder.user_plant_id)
                skipped.append(SkippedReminder(reminder_id=reminder.id, reason=TARGET_UNRESOLVED))
                continue
            resolved.append(DueReminder(reminder=reminder, target=target))
        return TargetResolution(resolved=resolved, skipped=skipped)
