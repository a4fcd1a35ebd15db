"""
structlog setup shared by the API, the worker scripts and the scheduler.

Production writes one JSON object per line; anything else gets the console
renderer. Worker code binds queue_id/keyword into contextvars, so every line
emitted while an entry is processed carries them:

    {"event": "Snapshot refreshed", "queue_id": "9f1c...", "keyword": "vacuum storage bags",
     "has_data": true, "listings": 8, "level": "info", "timestamp": "2025-01-28T12:00:00Z"}

The queue service and db utilities log through stdlib logging; those records
go to stdout with a plain one-line format.
"""

import logging
import sys
from typing import Any, Optional

import structlog

from keyword_snapshots.core.config import settings

IS_PRODUCTION = settings.ENVIRONMENT == "production"
IS_TEST = "pytest" in sys.modules

QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler", "asyncio", "sqlalchemy.engine")


def _resolve_level(level: Optional[str]) -> int:
    value = getattr(logging, (level or settings.LOG_LEVEL).upper(), None)
    return value if isinstance(value, int) else logging.INFO


def configure_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> None:
    log_level = _resolve_level(level)
    as_json = IS_PRODUCTION if json_logs is None else json_logs

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if as_json:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors += [structlog.dev.set_exc_info, structlog.dev.ConsoleRenderer(colors=not IS_TEST)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=not IS_TEST,
    )

    logging.basicConfig(
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
        level=log_level,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """structlog logger for `name` (usually __name__)."""
    return structlog.get_logger(name)


configure_logging()
