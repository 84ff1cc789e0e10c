"""Structured logging singleton for dropstage's own diagnostics.

Everything goes to stderr: stdout carries the container's build output and
the final result line, which callers may pipe.  The level is read from the
environment at import time (``DROPSTAGE_LOGGING__LEVEL``, then
``LOG_LEVEL``) so engine and config problems can be logged before Settings
load; ``set_level`` applies the ``[logging]`` table afterwards.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

from dropstage.errors import StagingError

# Chatty at DEBUG; their connection-level noise never helps a staging run
_QUIET_LOGGERS = ("aiohttp.access", "aiohttp.client", "asyncio")


def level_from_name(name: str | None) -> int:
    """Map a level name to its number; unknown or empty names mean INFO."""
    level = logging.getLevelName((name or "").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _env_level_name() -> str:
    return os.environ.get("DROPSTAGE_LOGGING__LEVEL") or os.environ.get("LOG_LEVEL") or ""


def _apply(level: int) -> None:
    logging.getLogger().setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def _setup_logging() -> structlog.stdlib.BoundLogger:
    level = level_from_name(_env_level_name())
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)
    _apply(level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger("dropstage")


logger = _setup_logging()


def set_level(level_name: str) -> None:
    """Apply the configured level; an explicit environment override still wins."""
    _apply(level_from_name(_env_level_name() or level_name))


def _uncaught_exception_handler(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    if issubclass(exc_type, StagingError):
        # Expected failure modes: the message says it all
        logger.error("Staging failed", err=str(exc_value))
    else:
        logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _uncaught_exception_handler
