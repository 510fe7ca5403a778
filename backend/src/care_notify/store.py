from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from itertools import count
from threading import Lock
from typing import Iterable, Protocol

from sqlalchemy import BigInteger, DateTime, Integer, String, Text, create_engine, delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .cadence import coerce_utc

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_optional_utc(value: datetime | None) -> datetime | None:
    return coerce_utc(value) if value is not None else None


class StoreUnavailableError(RuntimeError):
    """Raised when the backing record store cannot be reached or queried."""


class ReminderNotFoundError(KeyError):
    """Raised when an update references a reminder id that does not exist."""


@dataclass(frozen=True)
class ReminderRecord:
    id: str
    user_plant_id: str
    reminder_type: str
    frequency: str
    reminder_time: datetime
    last_notification_sent: datetime | None = None
    message: str | None = None


@dataclass(frozen=True)
class DeliveryTarget:
    user_id: str
    push_token: str
    plant_nickname: str | None = None


@dataclass(frozen=True)
class Recipient:
    user_id: str
    push_token: str


@dataclass(frozen=True)
class DeliveryLogEntry:
    type: str
    title: str
    body: str
    sent_at: datetime
    recipients: int
    data: dict[str, object] = field(default_factory=dict)
    user_ids: tuple[str, ...] | None = None
    log_id: int = 0


class ReminderStore(Protocol):
    def reset(self) -> None: ...

    def fetch_all_reminders(self) -> list[ReminderRecord]: ...

    def get_reminder(self, reminder_id: str) -> ReminderRecord | None: ...

    def resolve_target(self, reminder: ReminderRecord) -> DeliveryTarget | None: ...

    def update_reminder(
        self,
        reminder_id: str,
        *,
        last_notification_sent: datetime,
        reminder_time: datetime | None = None,
    ) -> None: ...

    def append_delivery_log(self, entry: DeliveryLogEntry) -> int: ...

    def list_delivery_logs(self, limit: int = 50) -> list[DeliveryLogEntry]: ...

    def list_recipients(self, user_ids: Iterable[str] | None = None) -> list[Recipient]: ...

    def acquire_leases(
        self,
        reminder_ids: Iterable[str],
        *,
        owner: str,
        now: datetime,
        ttl: timedelta,
    ) -> set[str]: ...

    def release_leases(self, reminder_ids: Iterable[str], *, owner: str) -> None: ...

    def upsert_reminder(self, record: ReminderRecord) -> None: ...

    def upsert_user_plant(self, user_plant_id: str, *, user_id: str, nickname: str | None = None) -> None: ...

    def upsert_push_token(self, user_id: str, push_token: str) -> None: ...


@dataclass
class _UserPlant:
    user_plant_id: str
    user_id: str
    nickname: str | None


@dataclass
class _Lease:
    owner: str
    expires_at: datetime


class InMemoryReminderStore:
    """Process-local store; reminders keep insertion order."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._log_counter = count(1)
        self._reminders: dict[str, ReminderRecord] = {}
        self._user_plants: dict[str, _UserPlant] = {}
        self._push_tokens: dict[str, str] = {}
        self._logs: list[DeliveryLogEntry] = []
        self._leases: dict[str, _Lease] = {}

    def reset(self) -> None:
        with self._lock:
            self._log_counter = count(1)
            self._reminders.clear()
            self._user_plants.clear()
            self._push_tokens.clear()
            self._logs.clear()
            self._leases.clear()

    def fetch_all_reminders(self) -> list[ReminderRecord]:
        with self._lock:
            return list(self._reminders.values())

    def get_reminder(self, reminder_id: str) -> ReminderRecord | None:
        with self._lock:
            return self._reminders.get(reminder_id)

    def resolve_target(self, reminder: ReminderRecord) -> DeliveryTarget | None:
        with self._lock:
            plant = self._user_plants.get(reminder.user_plant_id)
            if plant is None:
                return None
            token = (self._push_tokens.get(plant.user_id) or "").strip()
            if not token:
                return None
            return DeliveryTarget(user_id=plant.user_id, push_token=token, plant_nickname=plant.nickname)

    def update_reminder(
        self,
        reminder_id: str,
        *,
        last_notification_sent: datetime,
        reminder_time: datetime | None = None,
    ) -> None:
        with self._lock:
            existing = self._reminders.get(reminder_id)
            if existing is None:
                raise ReminderNotFoundError(reminder_id)
            self._reminders[reminder_id] = replace(
                existing,
                last_notification_sent=coerce_utc(last_notification_sent),
                reminder_time=coerce_utc(reminder_time) if reminder_time is not None else existing.reminder_time,
            )

    def append_delivery_log(self, entry: DeliveryLogEntry) -> int:
        with self._lock:
            log_id = next(self._log_counter)
            self._logs.append(replace(entry, log_id=log_id))
            return log_id

    def list_delivery_logs(self, limit: int = 50) -> list[DeliveryLogEntry]:
        with self._lock:
            ordered = sorted(self._logs, key=lambda value: (value.sent_at, value.log_id), reverse=True)
            return ordered[:limit]

    def list_recipients(self, user_ids: Iterable[str] | None = None) -> list[Recipient]:
        with self._lock:
            wanted = set(user_ids) if user_ids is not None else None
            return [
                Recipient(user_id=user_id, push_token=token)
                for user_id, token in sorted(self._push_tokens.items())
                if token.strip() and (wanted is None or user_id in wanted)
            ]

    def acquire_leases(
        self,
        reminder_ids: Iterable[str],
        *,
        owner: str,
        now: datetime,
        ttl: timedelta,
    ) -> set[str]:
        current = coerce_utc(now)
        acquired: set[str] = set()
        with self._lock:
            for reminder_id in reminder_ids:
                lease = self._leases.get(reminder_id)
                if lease is not None and lease.owner != owner and lease.expires_at > current:
                    continue
                self._leases[reminder_id] = _Lease(owner=owner, expires_at=current + ttl)
                acquired.add(reminder_id)
        return acquired

    def release_leases(self, reminder_ids: Iterable[str], *, owner: str) -> None:
        with self._lock:
            for reminder_id in reminder_ids:
                lease = self._leases.get(reminder_id)
                if lease is not None and lease.owner == owner:
                    del self._leases[reminder_id]

    def upsert_reminder(self, record: ReminderRecord) -> None:
        with self._lock:
            self._reminders[record.id] = replace(
                record,
                reminder_time=coerce_utc(record.reminder_time),
                last_notification_sent=_coerce_optional_utc(record.last_notification_sent),
            )

    def upsert_user_plant(self, user_plant_id: str, *, user_id: str, nickname: str | None = None) -> None:
        with self._lock:
            self._user_plants[user_plant_id] = _UserPlant(
                user_plant_id=user_plant_id,
                user_id=user_id,
                nickname=nickname,
            )

    def upsert_push_token(self, user_id: str, push_token: str) -> None:
        with self._lock:
            self._push_tokens[user_id] = push_token


class ReminderStoreBase(DeclarativeBase):
    pass


class _CareReminderRow(ReminderStoreBase):
    __tablename__ = "care_reminders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_plant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    reminder_type: Mapped[str] = mapped_column(String(32), nullable=False)
    frequency: Mapped[str] = mapped_column(String(16), nullable=False)
    reminder_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_notification_sent: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _UserPlantRow(ReminderStoreBase):
    __tablename__ = "user_plants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    nickname: Mapped[str | None] = mapped_column(String(256), nullable=True)


class _NotificationUserRow(ReminderStoreBase):
    __tablename__ = "notification_users"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    push_token: Mapped[str] = mapped_column(String(256), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _NotificationLogRow(ReminderStoreBase):
    __tablename__ = "notification_logs"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    data_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    recipients: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    user_ids_json: Mapped[str | None] = mapped_column(Text, nullable=True)


class _ReminderLeaseRow(ReminderStoreBase):
    __tablename__ = "reminder_leases"

    reminder_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


def _to_reminder(row: _CareReminderRow) -> ReminderRecord:
    return ReminderRecord(
        id=row.id,
        user_plant_id=row.user_plant_id,
        reminder_type=row.reminder_type,
        frequency=row.frequency,
        reminder_time=coerce_utc(row.reminder_time),
        last_notification_sent=_coerce_optional_utc(row.last_notification_sent),
        message=row.message,
    )


def _to_log_entry(row: _NotificationLogRow) -> DeliveryLogEntry:
    data = json.loads(row.data_json) if row.data_json else {}
    user_ids = json.loads(row.user_ids_json) if row.user_ids_json else None
    return DeliveryLogEntry(
        log_id=row.id,
        type=row.type,
        title=row.title,
        body=row.body,
        data=data if isinstance(data, dict) else {},
        sent_at=coerce_utc(row.sent_at),
        recipients=row.recipients,
        user_ids=tuple(user_ids) if isinstance(user_ids, list) else None,
    )


def _engine_connect_args(database_url: str, timeout_seconds: int) -> dict[str, object]:
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": timeout_seconds}
    if database_url.startswith("postgresql"):
        return {"connect_timeout": timeout_seconds}
    return {}


class SqlAlchemyReminderStore:
    def __init__(self, database_url: str, *, timeout_seconds: int = 10) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            connect_args=_engine_connect_args(database_url, timeout_seconds),
        )
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        # SQLite is used in tests. Production Postgres should rely on migrations.
        if database_url.startswith("sqlite"):
            ReminderStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_ReminderLeaseRow))
                session.execute(delete(_NotificationLogRow))
                session.execute(delete(_CareReminderRow))
                session.execute(delete(_UserPlantRow))
                session.execute(delete(_NotificationUserRow))

    def fetch_all_reminders(self) -> list[ReminderRecord]:
        try:
            with self._session() as session:
                rows = session.execute(
                    select(_CareReminderRow).order_by(_CareReminderRow.created_at.asc(), _CareReminderRow.id.asc())
                ).scalars()
                return [_to_reminder(row) for row in rows]
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"failed to fetch reminders: {exc}") from exc

    def get_reminder(self, reminder_id: str) -> ReminderRecord | None:
        try:
            with self._session() as session:
                row = session.get(_CareReminderRow, reminder_id)
                return _to_reminder(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"failed to load reminder {reminder_id}: {exc}") from exc

    def resolve_target(self, reminder: ReminderRecord) -> DeliveryTarget | None:
        try:
            with self._session() as session:
                plant = session.get(_UserPlantRow, reminder.user_plant_id)
                if plant is None:
                    return None
                user = session.get(_NotificationUserRow, plant.user_id)
                token = (user.push_token if user is not None else "").strip()
                if not token:
                    return None
                return DeliveryTarget(user_id=plant.user_id, push_token=token, plant_nickname=plant.nickname)
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"failed to resolve target for reminder {reminder.id}: {exc}") from exc

    def update_reminder(
        self,
        reminder_id: str,
        *,
        last_notification_sent: datetime,
        reminder_time: datetime | None = None,
    ) -> None:
        try:
            with self._session() as session:
                with session.begin():
                    row = session.get(_CareReminderRow, reminder_id)
                    if row is None:
                        raise ReminderNotFoundError(reminder_id)
                    row.last_notification_sent = coerce_utc(last_notification_sent)
                    if reminder_time is not None:
                        row.reminder_time = coerce_utc(reminder_time)
                    row.updated_at = _now_utc()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"failed to update reminder {reminder_id}: {exc}") from exc

    def append_delivery_log(self, entry: DeliveryLogEntry) -> int:
        try:
            with self._session() as session:
                with session.begin():
                    row = _NotificationLogRow(
                        type=entry.type,
                        title=entry.title,
                        body=entry.body,
                        data_json=json.dumps(entry.data, sort_keys=True, separators=(",", ":"), default=str),
                        sent_at=coerce_utc(entry.sent_at),
                        recipients=entry.recipients,
                        user_ids_json=json.dumps(list(entry.user_ids)) if entry.user_ids is not None else None,
                    )
                    session.add(row)
                    session.flush()
                    return row.id
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"failed to append delivery log: {exc}") from exc

    def list_delivery_logs(self, limit: int = 50) -> list[DeliveryLogEntry]:
        try:
            with self._session() as session:
                rows = session.execute(
                    select(_NotificationLogRow)
                    .order_by(_NotificationLogRow.sent_at.desc(), _NotificationLogRow.id.desc())
                    .limit(limit)
                ).scalars()
                return [_to_log_entry(row) for row in rows]
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"failed to list delivery logs: {exc}") from exc

    def list_recipients(self, user_ids: Iterable[str] | None = None) -> list[Recipient]:
        query = select(_NotificationUserRow).where(_NotificationUserRow.push_token != "")
        if user_ids is not None:
            query = query.where(_NotificationUserRow.user_id.in_(list(user_ids)))
        try:
            with self._session() as session:
                rows = session.execute(query.order_by(_NotificationUserRow.user_id.asc())).scalars()
                return [
                    Recipient(user_id=row.user_id, push_token=row.push_token.strip())
                    for row in rows
                    if row.push_token.strip()
                ]
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"failed to list recipients: {exc}") from exc

    def acquire_leases(
        self,
        reminder_ids: Iterable[str],
        *,
        owner: str,
        now: datetime,
        ttl: timedelta,
    ) -> set[str]:
        current = coerce_utc(now)
        expires_at = current + ttl
        acquired: set[str] = set()
        for reminder_id in reminder_ids:
            try:
                with self._session() as session:
                    with session.begin():
                        if self._try_acquire(session, reminder_id, owner=owner, now=current, expires_at=expires_at):
                            acquired.add(reminder_id)
            except IntegrityError:
                logger.info("lease for reminder %s taken by a concurrent run", reminder_id)
            except SQLAlchemyError as exc:
                raise StoreUnavailableError(f"failed to acquire lease for reminder {reminder_id}: {exc}") from exc
        return acquired

    @staticmethod
    def _try_acquire(session, reminder_id: str, *, owner: str, now: datetime, expires_at: datetime) -> bool:
        result = session.execute(
            update(_ReminderLeaseRow)
            .where(_ReminderLeaseRow.reminder_id == reminder_id)
            .where(or_(_ReminderLeaseRow.expires_at <= now, _ReminderLeaseRow.owner == owner))
            .values(owner=owner, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return True
        if session.get(_ReminderLeaseRow, reminder_id) is not None:
            return False
        session.add(_ReminderLeaseRow(reminder_id=reminder_id, owner=owner, expires_at=expires_at))
        session.flush()
        return True

    def release_leases(self, reminder_ids: Iterable[str], *, owner: str) -> None:
        ids = list(reminder_ids)
        if not ids:
            return
        try:
            with self._session() as session:
                with session.begin():
                    session.execute(
                        delete(_ReminderLeaseRow)
                        .where(_ReminderLeaseRow.reminder_id.in_(ids))
                        .where(_ReminderLeaseRow.owner == owner)
                    )
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"failed to release leases: {exc}") from exc

    def upsert_reminder(self, record: ReminderRecord) -> None:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                row = session.get(_CareReminderRow, record.id)
                if row is None:
                    row = _CareReminderRow(id=record.id, created_at=now)
                    session.add(row)
                row.user_plant_id = record.user_plant_id
                row.reminder_type = record.reminder_type
                row.frequency = record.frequency
                row.reminder_time = coerce_utc(record.reminder_time)
                row.last_notification_sent = _coerce_optional_utc(record.last_notification_sent)
                row.message = record.message
                row.updated_at = now

    def upsert_user_plant(self, user_plant_id: str, *, user_id: str, nickname: str | None = None) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_UserPlantRow, user_plant_id)
                if row is None:
                    session.add(_UserPlantRow(id=user_plant_id, user_id=user_id, nickname=nickname))
                else:
                    row.user_id = user_id
                    row.nickname = nickname

    def upsert_push_token(self, user_id: str, push_token: str) -> None:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                row = session.get(_NotificationUserRow, user_id)
                if row is None:
                    session.add(_NotificationUserRow(user_id=user_id, push_token=push_token, updated_at=now))
                else:
                    row.push_token = push_token
                    row.updated_at = now


def create_reminder_store(*, backend: str, database_url: str, timeout_seconds: int = 10) -> ReminderStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderStore(database_url, timeout_seconds=timeout_seconds)
    if normalized == "inmemory":
        return InMemoryReminderStore()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")
