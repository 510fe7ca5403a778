from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from threading import Event, Lock, Thread
from time import monotonic
from typing import Sequence

from .cadence import coerce_utc, is_due, is_terminal
from .committer import CommitReport, ScheduleCommitter
from .dispatcher import BatchDispatcher, DispatchReport
from .models import AdvancePolicy, ReminderSummaryResponse, SweepReason, SweepRunResponse, SweepSkip, SweepStage
from .push import PushMessage
from .resolver import ALREADY_ADVANCED, LEASE_HELD, DueReminder, DueSetResolver, SkippedReminder
from .store import DeliveryLogEntry, ReminderStore, StoreUnavailableError

logger = logging.getLogger(__name__)

REMINDER_LOG_TYPE = "reminders"
REMINDER_LOG_TITLE = "Plant Care Reminders"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _new_run_id() -> str:
    return f"sweep_{secrets.token_hex(8)}"


def reminder_body(reminder_type: str, message: str | None, nickname: str | None) -> str:
    if message and message.strip():
        return message.strip()
    return f"Time to {reminder_type} your {nickname or 'plant'}!"


class _LeaseKeeper:
    """Renews a run's leases in the background while it dispatches and commits."""

    def __init__(
        self,
        store: ReminderStore,
        reminder_ids: set[str],
        *,
        owner: str,
        run_at: datetime,
        ttl: timedelta,
    ) -> None:
        self._store = store
        self._reminder_ids = set(reminder_ids)
        self._owner = owner
        self._run_at = run_at
        self._ttl = ttl
        self._interval = max(ttl.total_seconds() / 3, 0.05)
        self._started = monotonic()
        self._stop = Event()
        self._thread = Thread(target=self._loop, name=f"lease-{owner}", daemon=True)

    def __enter__(self) -> _LeaseKeeper:
        self._thread.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._stop.set()
        self._thread.join(timeout=self._interval)

    def renew(self) -> set[str]:
        # Lease times follow the run's clock, which may be an override.
        now = self._run_at + timedelta(seconds=monotonic() - self._started)
        held = self._store.acquire_leases(self._reminder_ids, owner=self._owner, now=now, ttl=self._ttl)
        lost = self._reminder_ids - held
        if lost:
            logger.warning("sweep %s lost leases for reminders %s", self._owner, sorted(lost))
        return held

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.renew()
            except StoreUnavailableError:
                logger.exception("lease renewal failed for sweep %s", self._owner)


class ReminderSweepService:
    """Runs one due-reminder sweep: fetch, resolve, lease, dispatch, commit, summarize."""

    def __init__(
        self,
        *,
        store: ReminderStore,
        dispatcher: BatchDispatcher,
        committer: ScheduleCommitter,
        title: str = "Plant Care Reminder",
        advance_policy: AdvancePolicy = "submission",
        lease_ttl: timedelta = timedelta(minutes=5),
    ) -> None:
        if advance_policy not in {"submission", "accepted"}:
            raise ValueError(f"unsupported advance policy: {advance_policy}")
        self._store = store
        self._resolver = DueSetResolver(store)
        self._dispatcher = dispatcher
        self._committer = committer
        self._title = title
        self._advance_policy = advance_policy
        self._lease_ttl = lease_ttl
        self._last_run_lock = Lock()
        self._last_run: SweepRunResponse | None = None

    @property
    def last_run(self) -> SweepRunResponse | None:
        with self._last_run_lock:
            return self._last_run

    def run(self, *, now: datetime | None = None, dry_run: bool = False, trigger: str = "manual") -> SweepRunResponse:
        run_id = _new_run_id()
        run_at = coerce_utc(now) if now is not None else _now_utc()
        logger.info("sweep %s started (trigger=%s, dry_run=%s, run_at=%s)", run_id, trigger, dry_run, run_at.isoformat())

        response = self._run(run_id=run_id, run_at=run_at, dry_run=dry_run)

        logger.info(
            "sweep %s finished: success=%s reason=%s sent=%d skipped=%d failed_chunks=%d commit_failures=%d",
            run_id,
            response.success,
            response.reason,
            response.sent,
            response.skipped_count,
            response.failed_chunk_count,
            response.commit_failure_count,
        )
        if not dry_run:
            with self._last_run_lock:
                self._last_run = response
        return response

    def summary(self, *, now: datetime | None = None) -> ReminderSummaryResponse:
        current = coerce_utc(now) if now is not None else _now_utc()
        reminders = self._store.fetch_all_reminders()
        last = self.last_run
        return ReminderSummaryResponse(
            reminder_count=len(reminders),
            due_now_count=len(self._resolver.select_due(reminders, current)),
            terminal_count=sum(1 for item in reminders if is_terminal(item.frequency, item.last_notification_sent)),
            last_run_id=last.run_id if last else None,
            last_run_at=last.run_at if last else None,
            last_run_success=last.success if last else None,
            last_run_sent=last.sent if last else None,
            last_run_skipped=last.skipped_count if last else None,
            last_run_failed_chunks=last.failed_chunk_count if last else None,
            last_run_commit_failures=last.commit_failure_count if last else None,
        )

    def _run(self, *, run_id: str, run_at: datetime, dry_run: bool) -> SweepRunResponse:
        try:
            reminders = self._store.fetch_all_reminders()
        except StoreUnavailableError as exc:
            return self._failure(run_id, run_at, dry_run, stage="fetch", error=exc)
        if not reminders:
            return self._result(run_id, run_at, dry_run, reason="no-reminders", message="No reminders found")

        due = self._resolver.select_due(reminders, run_at)
        if not due:
            return self._result(
                run_id,
                run_at,
                dry_run,
                reason="no-due",
                message="No reminders due",
                evaluated_count=len(reminders),
            )

        try:
            resolution = self._resolver.resolve_targets(due)
        except StoreUnavailableError as exc:
            return self._failure(
                run_id, run_at, dry_run, stage="resolve_targets", error=exc, evaluated_count=len(reminders)
            )
        skipped = list(resolution.skipped)

        if dry_run:
            return self._result(
                run_id,
                run_at,
                dry_run,
                reason="dry-run",
                message=f"{len(resolution.resolved)} reminders would be sent",
                evaluated_count=len(reminders),
                due_count=len(due),
                due_reminder_ids=[item.reminder.id for item in resolution.resolved],
                skipped=skipped,
            )
        if not resolution.resolved:
            return self._result(
                run_id,
                run_at,
                dry_run,
                reason="no-targets",
                message="No valid users found for reminders",
                evaluated_count=len(reminders),
                due_count=len(due),
                skipped=skipped,
            )

        candidate_ids = [item.reminder.id for item in resolution.resolved]
        try:
            leased = self._store.acquire_leases(candidate_ids, owner=run_id, now=run_at, ttl=self._lease_ttl)
        except StoreUnavailableError as exc:
            return self._failure(
                run_id,
                run_at,
                dry_run,
                stage="resolve_targets",
                error=exc,
                evaluated_count=len(reminders),
                due_count=len(due),
                skipped=skipped,
            )

        try:
            try:
                confirmed = self._confirm_leased(resolution.resolved, leased, run_at, skipped)
            except StoreUnavailableError as exc:
                return self._failure(
                    run_id,
                    run_at,
                    dry_run,
                    stage="resolve_targets",
                    error=exc,
                    evaluated_count=len(reminders),
                    due_count=len(due),
                    skipped=skipped,
                )
            if not confirmed:
                return self._result(
                    run_id,
                    run_at,
                    dry_run,
                    reason="no-due",
                    message="Due reminders are already being handled by another run",
                    evaluated_count=len(reminders),
                    due_count=len(due),
                    skipped=skipped,
                )

            by_id = {item.reminder.id: item.reminder for item in confirmed}
            with _LeaseKeeper(self._store, set(by_id), owner=run_id, run_at=run_at, ttl=self._lease_ttl) as keeper:
                dispatch = self._dispatcher.dispatch(
                    [(item.reminder.id, self._build_message(item, run_id)) for item in confirmed]
                )
                advance_ids = dispatch.accepted if self._advance_policy == "accepted" else dispatch.attempted
                try:
                    keeper.renew()
                except StoreUnavailableError:
                    logger.exception("lease renewal before commit failed for sweep %s", run_id)
                commit = self._committer.commit([by_id[reminder_id] for reminder_id in advance_ids], run_at)
            self._append_log(confirmed, dispatch, run_at)
            return self._dispatched_result(
                run_id,
                run_at,
                dispatch=dispatch,
                commit=commit,
                evaluated_count=len(reminders),
                due_count=len(due),
                due_reminder_ids=[item.reminder.id for item in confirmed],
                skipped=skipped,
            )
        finally:
            self._release(leased, run_id)

    def _confirm_leased(
        self,
        resolved: Sequence[DueReminder],
        leased: set[str],
        run_at: datetime,
        skipped: list[SkippedReminder],
    ) -> list[DueReminder]:
        confirmed: list[DueReminder] = []
        for item in resolved:
            reminder_id = item.reminder.id
            if reminder_id not in leased:
                logger.info("reminder %s skipped: lease held by another run", reminder_id)
                skipped.append(SkippedReminder(reminder_id=reminder_id, reason=LEASE_HELD))
                continue
            fresh = self._store.get_reminder(reminder_id)
            if fresh is None or not is_due(fresh.frequency, fresh.reminder_time, fresh.last_notification_sent, run_at):
                logger.info("reminder %s skipped: already advanced by another run", reminder_id)
                skipped.append(SkippedReminder(reminder_id=reminder_id, reason=ALREADY_ADVANCED))
                continue
            confirmed.append(DueReminder(reminder=fresh, target=item.target))
        return confirmed

    def _build_message(self, item: DueReminder, run_id: str) -> PushMessage:
        reminder = item.reminder
        return PushMessage(
            to=item.target.push_token,
            title=self._title,
            body=reminder_body(reminder.reminder_type, reminder.message, item.target.plant_nickname),
            data={
                "type": "reminder",
                "reminderId": reminder.id,
                "plantId": reminder.user_plant_id,
                "userId": item.target.user_id,
                "reminderType": reminder.reminder_type,
                "uri": f"/plants/{reminder.user_plant_id}",
                "runId": run_id,
            },
        )

    def _append_log(self, confirmed: Sequence[DueReminder], dispatch: DispatchReport, run_at: datetime) -> None:
        attempted = set(dispatch.attempted)
        sent = [item for item in confirmed if item.reminder.id in attempted]
        if not sent:
            return
        entry = DeliveryLogEntry(
            type=REMINDER_LOG_TYPE,
            title=REMINDER_LOG_TITLE,
            body=f"Sent {len(sent)} reminder notifications",
            sent_at=run_at,
            recipients=len(sent),
            data={
                "reminders": [
                    {"id": item.reminder.id, "type": item.reminder.reminder_type, "frequency": item.reminder.frequency}
                    for item in sent
                ]
            },
        )
        try:
            self._store.append_delivery_log(entry)
        except StoreUnavailableError:
            logger.exception("failed to append reminder delivery log")

    def _release(self, leased: set[str], run_id: str) -> None:
        if not leased:
            return
        try:
            self._store.release_leases(leased, owner=run_id)
        except StoreUnavailableError:
            logger.exception("failed to release %d leases for sweep %s; they expire on their own", len(leased), run_id)

    @staticmethod
    def _skips(skipped: Sequence[SkippedReminder]) -> list[SweepSkip]:
        return [SweepSkip(reminder_id=item.reminder_id, reason=item.reason) for item in skipped]

    def _result(
        self,
        run_id: str,
        run_at: datetime,
        dry_run: bool,
        *,
        reason: SweepReason,
        message: str,
        evaluated_count: int = 0,
        due_count: int = 0,
        due_reminder_ids: list[str] | None = None,
        skipped: Sequence[SkippedReminder] = (),
    ) -> SweepRunResponse:
        return SweepRunResponse(
            success=True,
            sent=0,
            message=message,
            timestamp=_now_utc(),
            run_id=run_id,
            run_at=run_at,
            reason=reason,
            dry_run=dry_run,
            evaluated_count=evaluated_count,
            due_count=due_count,
            skipped_count=len(skipped),
            due_reminder_ids=due_reminder_ids or [],
            skipped=self._skips(skipped),
        )

    def _failure(
        self,
        run_id: str,
        run_at: datetime,
        dry_run: bool,
        *,
        stage: SweepStage,
        error: Exception,
        evaluated_count: int = 0,
        due_count: int = 0,
        skipped: Sequence[SkippedReminder] = (),
    ) -> SweepRunResponse:
        logger.error("sweep %s failed at stage %s: %s", run_id, stage, error)
        return SweepRunResponse(
            success=False,
            sent=0,
            message=f"Sweep failed during {stage}",
            timestamp=_now_utc(),
            run_id=run_id,
            run_at=run_at,
            reason="failed",
            dry_run=dry_run,
            failed_stage=stage,
            error=str(error),
            evaluated_count=evaluated_count,
            due_count=due_count,
            skipped_count=len(skipped),
            skipped=self._skips(skipped),
        )

    def _dispatched_result(
        self,
        run_id: str,
        run_at: datetime,
        *,
        dispatch: DispatchReport,
        commit: CommitReport,
        evaluated_count: int,
        due_count: int,
        due_reminder_ids: list[str],
        skipped: Sequence[SkippedReminder],
    ) -> SweepRunResponse:
        message = f"Reminder notifications sent to {dispatch.sent} users"
        if dispatch.chunk_failures:
            message += f"; {len(dispatch.chunk_failures)} chunks failed"
        if commit.failures:
            message += f"; {len(commit.failures)} schedule updates failed"
        return SweepRunResponse(
            success=True,
            sent=dispatch.sent,
            tickets=[ticket.to_result() for ticket in dispatch.tickets],
            message=message,
            timestamp=_now_utc(),
            run_id=run_id,
            run_at=run_at,
            reason="sent",
            evaluated_count=evaluated_count,
            due_count=due_count,
            skipped_count=len(skipped),
            failed_chunk_count=len(dispatch.chunk_failures),
            committed_count=len(commit.committed),
            commit_failure_count=len(commit.failures),
            due_reminder_ids=due_reminder_ids,
            skipped=self._skips(skipped),
        )
