"""Structured logging configuration using structlog.

Supervisor diagnostics always go to stderr: stdout belongs to command
output (query payloads, queue listings) that other tools parse.
"""

from __future__ import annotations

import datetime as dt
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, TextIO

import structlog

from flowwatch.config import get_settings

if TYPE_CHECKING:
    from flowwatch.config import Settings

# Chatty third-party loggers held at WARNING unless debugging
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def plain_values(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Render paths and datetimes as plain strings for either renderer."""
    for key, value in event_dict.items():
        if isinstance(value, Path):
            event_dict[key] = str(value)
        elif isinstance(value, dt.datetime):
            event_dict[key] = value.isoformat()
    return event_dict


def setup_logging(settings: Optional["Settings"] = None, stream: Optional[TextIO] = None) -> None:
    """Configure structlog and stdlib logging for the supervisor processes."""
    settings = settings or get_settings()
    stream = stream or sys.stderr
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.env == "production":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=stream.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            plain_values,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=stream,
        level=log_level,
        force=True,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a named structured logger."""
    return structlog.get_logger(name)
