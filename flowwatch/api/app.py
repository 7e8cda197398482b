"""FastAPI application factory for the webhook ingress."""

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI

from flowwatch import __version__
from flowwatch.api.routes import FixedWindowRateLimiter, configure, router
from flowwatch.config import Settings, get_settings
from flowwatch.supervisor.task_queue import TaskQueue


def create_app(settings: Optional[Settings] = None, queue: Optional[TaskQueue] = None) -> FastAPI:
    settings = settings or get_settings()
    if queue is None:
        settings.ensure_workspace()
        queue = TaskQueue(
            settings.queue_path,
            settings.archive_path,
            expiry_hours=settings.queue_expiry_hours,
            max_size=settings.queue_max_size,
        )
    configure(
        queue,
        settings.webhook_secret,
        FixedWindowRateLimiter(settings.webhook_rate_limit, settings.webhook_rate_window_seconds),
    )
    app = FastAPI(
        title="flowwatch",
        description="Webhook ingress for the workflow supervisor",
        version=__version__,
    )
    app.include_router(router)
    return app
