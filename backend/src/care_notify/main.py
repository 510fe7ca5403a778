from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import api as api_module
from .api import router
from .config import get_settings, runtime_config_issues
from .scheduler import start_scheduler, stop_scheduler

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level)

    config_issues = runtime_config_issues(settings)
    if config_issues:
        if settings.runtime_config_guard_mode == "enforce":
            raise RuntimeError(
                "runtime config guard blocked startup: "
                + "; ".join(config_issues)
                + ". Remediation: fix the listed settings or set RUNTIME_CONFIG_GUARD_MODE=warn."
            )
        if settings.runtime_config_guard_mode == "warn":
            for issue in config_issues:
                logger.warning("runtime config guard warning: %s", issue)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        started = False
        if settings.scheduler_enabled:
            scheduler = start_scheduler(
                api_module.run_scheduled_sweep,
                interval_minutes=settings.sweep_interval_minutes,
            )
            started = scheduler is not None
        try:
            yield
        finally:
            if started:
                stop_scheduler()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


app = create_app()
