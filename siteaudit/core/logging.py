"""
Structured logging using structlog.
JSON lines in production, colored console in development.

Every log line emitted while an analysis is running carries the
analysis_id and root_url bound by bind_analysis().
"""

import logging
import sys
import uuid
from typing import Any

import structlog
from structlog.types import EventDict

from siteaudit.core.config import get_settings

NOISY_LOGGERS = ("asyncio", "httpx", "httpcore")


def add_severity(logger: Any, method: str, event_dict: EventDict) -> EventDict:
    """Map structlog levels to GCP/Datadog severity levels."""
    level_map = {
        "debug": "DEBUG",
        "info": "INFO",
        "warning": "WARNING",
        "error": "ERROR",
        "critical": "CRITICAL",
    }
    event_dict["severity"] = level_map.get(method, "INFO")
    return event_dict


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    settings = get_settings()
    level_name = (level or settings.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)
    log_format = log_format or settings.LOG_FORMAT

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_severity,
    ]

    if log_format == "json":
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        renderer = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    # One httpx line per checked link drowns the engine logs
    if settings.ENV == "production" or log_level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def bind_analysis(root_url: str) -> str:
    """Tag subsequent log lines of this task with a fresh analysis id."""
    analysis_id = uuid.uuid4().hex[:12]
    structlog.contextvars.bind_contextvars(analysis_id=analysis_id, root_url=root_url)
    return analysis_id


def unbind_analysis() -> None:
    structlog.contextvars.unbind_contextvars("analysis_id", "root_url")
