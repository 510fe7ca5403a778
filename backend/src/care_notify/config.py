from __future__ import annotations

import os
from dataclasses import dataclass

EXPO_CHUNK_LIMIT = 100

DEFAULT_CORS_ORIGINS = (
    "http://localhost:3000",
    "http://localhost:8081",
    "http://localhost:19006",
    "exp://localhost:19000",
)


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_csv_tuple(value: str | None, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    if value is None:
        return default
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "Care Reminder Notifications"
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"
    cors_allowed_origins: tuple[str, ...] = DEFAULT_CORS_ORIGINS
    # Push transport.
    push_sender_type: str = "stub"
    push_enabled: bool = False
    expo_api_base_url: str = "https://exp.host/--/api/v2"
    expo_access_token: str = ""
    push_timeout_seconds: int = 30
    push_chunk_size: int = EXPO_CHUNK_LIMIT
    push_max_workers: int = 4
    notification_title: str = "Plant Care Reminder"
    # Reminder store and sweep.
    reminder_store_backend: str = "inmemory"
    database_url: str = ""
    store_timeout_seconds: int = 10
    commit_max_workers: int = 4
    reminder_advance_policy: str = "submission"
    reminder_lease_ttl_seconds: int = 300
    reminder_allow_now_override: bool = False
    scheduler_enabled: bool = False
    sweep_interval_minutes: int = 5
    runtime_config_guard_mode: str = "warn"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("CARE_NOTIFY_APP_NAME", "Care Reminder Notifications"),
        api_prefix=os.getenv("CARE_NOTIFY_API_PREFIX", "/api/v1"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        cors_allowed_origins=_as_csv_tuple(os.getenv("CORS_ALLOWED_ORIGINS"), DEFAULT_CORS_ORIGINS),
        push_sender_type=_normalize_mode(os.getenv("PUSH_SENDER_TYPE"), default="stub", allowed={"stub", "expo"}),
        push_enabled=_as_bool(os.getenv("PUSH_ENABLED"), False),
        expo_api_base_url=os.getenv("EXPO_API_BASE_URL", "https://exp.host/--/api/v2"),
        expo_access_token=os.getenv("EXPO_ACCESS_TOKEN", ""),
        push_timeout_seconds=_as_int(os.getenv("PUSH_TIMEOUT_SECONDS"), 30),
        push_chunk_size=_as_int(os.getenv("PUSH_CHUNK_SIZE"), EXPO_CHUNK_LIMIT),
        push_max_workers=_as_int(os.getenv("PUSH_MAX_WORKERS"), 4),
        notification_title=os.getenv("REMINDER_NOTIFICATION_TITLE", "Plant Care Reminder"),
        reminder_store_backend=os.getenv("REMINDER_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        store_timeout_seconds=_as_int(os.getenv("STORE_TIMEOUT_SECONDS"), 10),
        commit_max_workers=_as_int(os.getenv("COMMIT_MAX_WORKERS"), 4),
        reminder_advance_policy=_normalize_mode(
            os.getenv("REMINDER_ADVANCE_POLICY"),
            default="submission",
            allowed={"submission", "accepted"},
        ),
        reminder_lease_ttl_seconds=_as_int(os.getenv("REMINDER_LEASE_TTL_SECONDS"), 300),
        reminder_allow_now_override=_as_bool(os.getenv("REMINDER_ALLOW_NOW_OVERRIDE"), False),
        scheduler_enabled=_as_bool(os.getenv("REMINDER_SCHEDULER_ENABLED"), False),
        sweep_interval_minutes=_as_int(os.getenv("REMINDER_SWEEP_INTERVAL_MINUTES"), 5),
        runtime_config_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_CONFIG_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_config_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.push_sender_type == "expo" and not settings.expo_api_base_url.strip():
        issues.append("EXPO_API_BASE_URL is required when PUSH_SENDER_TYPE=expo")
    if settings.reminder_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when REMINDER_STORE_BACKEND=postgres")
    if settings.push_chunk_size < 1 or settings.push_chunk_size > EXPO_CHUNK_LIMIT:
        issues.append(f"PUSH_CHUNK_SIZE must be between 1 and {EXPO_CHUNK_LIMIT}")
    if settings.push_max_workers < 1 or settings.commit_max_workers < 1:
        issues.append("PUSH_MAX_WORKERS and COMMIT_MAX_WORKERS must be at least 1")
    if settings.reminder_lease_ttl_seconds <= settings.push_timeout_seconds + settings.store_timeout_seconds:
        issues.append(
            "REMINDER_LEASE_TTL_SECONDS must exceed PUSH_TIMEOUT_SECONDS + STORE_TIMEOUT_SECONDS "
            "so in-flight reminders stay leased between renewals"
        )
    if settings.scheduler_enabled and settings.push_sender_type == "stub" and not settings.push_enabled:
        issues.append(
            "REMINDER_SCHEDULER_ENABLED=true but push delivery is disabled "
            "(PUSH_SENDER_TYPE=stub and PUSH_ENABLED=false); scheduled sweeps will not advance reminders"
        )
    return tuple(issues)
