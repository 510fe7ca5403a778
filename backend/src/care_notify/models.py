from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

Frequency = Literal["once", "daily", "weekly", "biweekly", "monthly"]
TicketStatus = Literal["ok", "error"]
SweepStage = Literal["fetch", "resolve_due", "resolve_targets", "dispatch", "commit", "summarize"]
SweepReason = Literal["sent", "no-reminders", "no-due", "no-targets", "dry-run", "failed"]
AdvancePolicy = Literal["submission", "accepted"]
DeliveryLogType = Literal["reminders", "all", "specific"]


def _normalize_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PushTicketResult(BaseModel):
    status: TicketStatus
    id: str | None = None
    message: str | None = None
    details: dict[str, Any] | None = None


class HealthResponse(BaseModel):
    status: str
    message: str
    timestamp: datetime


class SweepRunRequest(BaseModel):
    dry_run: bool = False
    now_override: datetime | None = None

    @field_validator("now_override")
    @classmethod
    def _normalize_override(cls, value: datetime | None) -> datetime | None:
        return _normalize_utc(value)


class SweepSkip(BaseModel):
    reminder_id: str
    reason: str


class SweepRunResponse(BaseModel):
    success: bool
    sent: int
    tickets: list[PushTicketResult] = Field(default_factory=list)
    message: str
    timestamp: datetime
    run_id: str
    run_at: datetime
    reason: SweepReason
    dry_run: bool = False
    failed_stage: SweepStage | None = None
    error: str | None = None
    evaluated_count: int = 0
    due_count: int = 0
    skipped_count: int = 0
    failed_chunk_count: int = 0
    committed_count: int = 0
    commit_failure_count: int = 0
    due_reminder_ids: list[str] = Field(default_factory=list)
    skipped: list[SweepSkip] = Field(default_factory=list)


class BroadcastRequest(BaseModel):
    title: str = Field(min_length=1, max_length=256)
    body: str = Field(min_length=1, max_length=4096)
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("title", "body")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("title and body cannot be blank")
        return normalized


class BroadcastUsersRequest(BroadcastRequest):
    user_ids: list[str] = Field(min_length=1, max_length=10000)

    @field_validator("user_ids")
    @classmethod
    def _normalize_user_ids(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        seen: set[str] = set()
        for raw in value:
            user_id = str(raw).strip()
            if not user_id:
                raise ValueError("user_ids entries cannot be blank")
            if user_id in seen:
                continue
            seen.add(user_id)
            normalized.append(user_id)
        return normalized


class BroadcastResponse(BaseModel):
    success: bool
    sent: int
    recipients: int
    failed_chunk_count: int = 0
    tickets: list[PushTicketResult] = Field(default_factory=list)
    message: str
    timestamp: datetime


class ReminderSummaryResponse(BaseModel):
    reminder_count: int
    due_now_count: int
    terminal_count: int
    last_run_id: str | None = None
    last_run_at: datetime | None = None
    last_run_success: bool | None = None
    last_run_sent: int | None = None
    last_run_skipped: int | None = None
    last_run_failed_chunks: int | None = None
    last_run_commit_failures: int | None = None


class DeliveryLogItem(BaseModel):
    log_id: int
    type: DeliveryLogType
    title: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict)
    sent_at: datetime
    recipients: int
    user_ids: list[str] | None = None


class DeliveryLogListResponse(BaseModel):
    items: list[DeliveryLogItem]
