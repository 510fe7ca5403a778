from __future__ import annotations

import os
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from care_notify import scheduler as scheduler_module
from care_notify.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def test_create_app_starts_with_defaults() -> None:
    previous = _set_env({"RUNTIME_CONFIG_GUARD_MODE": "enforce", "REMINDER_SCHEDULER_ENABLED": None})
    try:
        app = create_app()
        assert app.title == "Care Reminder Notifications"
    finally:
        _restore_env(previous)


def test_create_app_blocks_misconfiguration_in_enforce_mode() -> None:
    previous = _set_env(
        {
            "RUNTIME_CONFIG_GUARD_MODE": "enforce",
            "REMINDER_STORE_BACKEND": "postgres",
            "DATABASE_URL": None,
        }
    )
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        message = str(exc_info.value)
        assert "DATABASE_URL is required" in message
        assert "RUNTIME_CONFIG_GUARD_MODE=warn" in message
    finally:
        _restore_env(previous)


def test_create_app_warns_in_warn_mode(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env({"RUNTIME_CONFIG_GUARD_MODE": "warn", "PUSH_CHUNK_SIZE": "500"})
    try:
        with caplog.at_level("WARNING"):
            create_app()
        assert any("PUSH_CHUNK_SIZE" in record.getMessage() for record in caplog.records)
    finally:
        _restore_env(previous)


def test_lifespan_starts_and_stops_scheduler_when_enabled() -> None:
    previous = _set_env(
        {
            "REMINDER_SCHEDULER_ENABLED": "true",
            "PUSH_ENABLED": "true",
            "REMINDER_SWEEP_INTERVAL_MINUTES": "15",
            "RUNTIME_CONFIG_GUARD_MODE": "enforce",
        }
    )
    try:
        with patch("care_notify.main.start_scheduler", wraps=scheduler_module.start_scheduler) as start:
            with TestClient(create_app()):
                assert scheduler_module.is_running() is True
            assert start.call_args.kwargs["interval_minutes"] == 15
        assert scheduler_module.is_running() is False
    finally:
        scheduler_module.stop_scheduler()
        _restore_env(previous)
