"""structlog setup shared by the CLI and the monitoring loop."""

from __future__ import annotations

import logging
import sys

import structlog

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def level_from_name(name: str | None) -> int:
    return _LEVELS.get(str(name or "info").strip().lower(), logging.INFO)


def _stderr_logger(*args: object) -> structlog.PrintLogger:
    # Look sys.stderr up per logger so a replaced stream (pytest capture, daemon redirect) is honoured.
    return structlog.PrintLogger(file=sys.stderr)


def configure_logging(level: str | None = "INFO") -> None:
    numeric = level_from_name(level)
    # Logs go to stderr; stdout carries command output such as JSON reports.
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        logger_factory=_stderr_logger,
        cache_logger_on_first_use=False,
    )

    # Telegram bot tokens are part of the request URL.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
