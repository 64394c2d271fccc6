"""
Structured logging setup (structlog on top of the stdlib logging module).

Usage::

    from deployflow.core.logging import get_logger, setup_logging

    setup_logging("INFO")          # once, at process start
    logger = get_logger(__name__)
    logger.info("Execution started", execution_id=execution.id)
"""

from __future__ import annotations

import logging
import sys

import structlog

from deployflow.core.config import settings


def setup_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Development uses the coloured console renderer; anything else
    renders one JSON object per line.
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    if json_logs is None:
        json_logs = settings.LOG_JSON or settings.APP_ENV != "development"

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
        force=True,
    )

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to `name`."""
    return structlog.get_logger(name)
