from __future__ import annotations

import logging
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "care_reminder_sweep"

# Module-level guard against a second start (reloaders, repeated lifespans).
_scheduler: BackgroundScheduler | None = None


def start_scheduler(sweep: Callable[[], object], *, interval_minutes: int) -> BackgroundScheduler | None:
    """Start the background sweep job; returns None when one is already running."""
    global _scheduler

    if _scheduler is not None:
        logger.info("reminder scheduler already running, skipping start")
        return None

    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        _run_sweep_job,
        trigger="interval",
        minutes=max(1, interval_minutes),
        args=[sweep],
        id=SWEEP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    _scheduler = scheduler
    logger.info("reminder scheduler started: sweep every %d minutes", max(1, interval_minutes))
    return scheduler


def stop_scheduler() -> None:
    global _scheduler

    if _scheduler is None:
        return
    _scheduler.shutdown(wait=False)
    _scheduler = None
    logger.info("reminder scheduler stopped")


def is_running() -> bool:
    return _scheduler is not None


def _run_sweep_job(sweep: Callable[[], object]) -> None:
    try:
        sweep()
    except Exception:
        # Keep the interval job alive for the next tick.
        logger.exception("scheduled reminder sweep raised")
