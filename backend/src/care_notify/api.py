from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, HTTPException, Query

from .broadcast import BroadcastService, NoRecipientsError
from .committer import ScheduleCommitter
from .config import Settings, get_settings
from .dispatcher import BatchDispatcher
from .models import (
    BroadcastRequest,
    BroadcastResponse,
    BroadcastUsersRequest,
    DeliveryLogItem,
    DeliveryLogListResponse,
    HealthResponse,
    ReminderSummaryResponse,
    SweepRunRequest,
    SweepRunResponse,
)
from .push import PushSender, create_push_sender
from .store import ReminderStore, StoreUnavailableError, create_reminder_store
from .sweep import ReminderSweepService

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["notifications"])


def _build_sweep_service(settings: Settings, store: ReminderStore, sender: PushSender) -> ReminderSweepService:
    return ReminderSweepService(
        store=store,
        dispatcher=_build_dispatcher(settings, sender),
        committer=ScheduleCommitter(
            store,
            max_workers=settings.commit_max_workers,
            timeout_seconds=settings.store_timeout_seconds,
        ),
        title=settings.notification_title,
        advance_policy=settings.reminder_advance_policy,
        lease_ttl=timedelta(seconds=settings.reminder_lease_ttl_seconds),
    )


def _build_dispatcher(settings: Settings, sender: PushSender) -> BatchDispatcher:
    return BatchDispatcher(
        sender,
        chunk_size=settings.push_chunk_size,
        max_workers=settings.push_max_workers,
        timeout_seconds=settings.push_timeout_seconds,
    )


reminder_store: ReminderStore = create_reminder_store(
    backend=_settings.reminder_store_backend,
    database_url=_settings.database_url,
    timeout_seconds=_settings.store_timeout_seconds,
)
push_sender: PushSender = create_push_sender(_settings)
sweep_service: ReminderSweepService = _build_sweep_service(_settings, reminder_store, push_sender)
broadcast_service = BroadcastService(store=reminder_store, dispatcher=_build_dispatcher(_settings, push_sender))


def configure_runtime(
    *,
    settings: Settings | None = None,
    store: ReminderStore | None = None,
    sender: PushSender | None = None,
) -> None:
    """Swap runtime collaborators and rebuild the services that depend on them."""
    global _settings, reminder_store, push_sender, sweep_service, broadcast_service

    if settings is not None:
        _settings = settings
    if store is not None:
        reminder_store = store
    if sender is not None:
        push_sender = sender
    sweep_service = _build_sweep_service(_settings, reminder_store, push_sender)
    broadcast_service = BroadcastService(store=reminder_store, dispatcher=_build_dispatcher(_settings, push_sender))


def reset_runtime_state_for_tests() -> None:
    reminder_store.reset()
    configure_runtime()


def run_scheduled_sweep() -> SweepRunResponse:
    return sweep_service.run(trigger="scheduler")


def _sweep_or_500(*, now: datetime | None, dry_run: bool, trigger: str) -> SweepRunResponse:
    result = sweep_service.run(now=now, dry_run=dry_run, trigger=trigger)
    if not result.success:
        raise HTTPException(status_code=500, detail=f"{result.message}: {result.error}")
    return result


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        message="Notification server is running",
        timestamp=datetime.now(timezone.utc),
    )


@router.post("/notify/reminders", response_model=SweepRunResponse)
def notify_reminders(payload: SweepRunRequest | None = None) -> SweepRunResponse:
    request = payload or SweepRunRequest()
    if request.now_override is not None and not request.dry_run and not _settings.reminder_allow_now_override:
        raise HTTPException(
            status_code=400,
            detail="now_override is only accepted for dry runs unless REMINDER_ALLOW_NOW_OVERRIDE=true",
        )
    return _sweep_or_500(now=request.now_override, dry_run=request.dry_run, trigger="http")


@router.get("/cron/reminders", response_model=SweepRunResponse)
def cron_reminders() -> SweepRunResponse:
    return _sweep_or_500(now=None, dry_run=False, trigger="cron")


@router.post("/notify/all", response_model=BroadcastResponse)
def notify_all(payload: BroadcastRequest) -> BroadcastResponse:
    try:
        return broadcast_service.broadcast_to_all(title=payload.title, body=payload.body, data=payload.data)
    except NoRecipientsError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=500, detail="Failed to fetch users") from exc


@router.post("/notify/users", response_model=BroadcastResponse)
def notify_users(payload: BroadcastUsersRequest) -> BroadcastResponse:
    try:
        return broadcast_service.broadcast_to_users(
            payload.user_ids,
            title=payload.title,
            body=payload.body,
            data=payload.data,
        )
    except NoRecipientsError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=500, detail="Failed to fetch users") from exc


@router.get("/reminders/summary", response_model=ReminderSummaryResponse)
def reminder_summary() -> ReminderSummaryResponse:
    try:
        return sweep_service.summary()
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=500, detail="Failed to fetch reminders") from exc


@router.get("/notifications/logs", response_model=DeliveryLogListResponse)
def notification_logs(limit: int = Query(default=50, ge=1, le=500)) -> DeliveryLogListResponse:
    try:
        entries = reminder_store.list_delivery_logs(limit)
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=500, detail="Failed to fetch notification logs") from exc
    return DeliveryLogListResponse(
        items=[
            DeliveryLogItem(
                log_id=entry.log_id,
                type=entry.type,
                title=entry.title,
                body=entry.body,
                data=entry.data,
                sent_at=entry.sent_at,
                recipients=entry.recipients,
                user_ids=list(entry.user_ids) if entry.user_ids is not None else None,
            )
            for entry in entries
        ]
    )
