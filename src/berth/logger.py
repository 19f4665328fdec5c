"""Structured logging singleton for the host process.

Starts from ``LOG_LEVEL`` in the environment: the logger has to exist before
Settings is loaded, since config validation errors are logged too. Once
Settings is built, ``[logging] level`` applies unless ``LOG_LEVEL`` is set.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog


def _resolve_level(configured: str | None = None) -> int:
    name = (os.environ.get("LOG_LEVEL") or configured or "INFO").upper()
    if name == "TRACE":
        return logging.DEBUG
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def apply_log_level(configured: str | None) -> int:
    """Set the host log level from config; ``LOG_LEVEL`` in the environment wins."""
    level = _resolve_level(configured)
    logging.getLogger().setLevel(level)
    return level


def _setup_logging() -> structlog.stdlib.BoundLogger:
    level = _resolve_level()

    # structlog's filter_by_level defers to the stdlib root logger
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger("berth")


logger = _setup_logging()


def container_logger(group_folder: str, container_name: str) -> structlog.stdlib.BoundLogger:
    """Logger with the group and container bound, used for one container run."""
    return logger.bind(group=group_folder, container=container_name)


def _log_crash(exc_type, exc_value, exc_tb) -> None:
    """Route crashes of the host process through structlog; Ctrl-C stays quiet."""
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)
        return
    logger.critical("berth host crashed", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _log_crash
