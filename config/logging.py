"""Structured logging setup using structlog.

Console output for development, JSON lines for anything that ships logs
somewhere. API keys never reach the log stream.
"""
from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, WrappedLogger

SENSITIVE_KEYS: frozenset[str] = frozenset({
    "api_key",
    "apikey",
    "authorization",
    "token",
    "secret",
})


def redact_secrets(_logger: WrappedLogger, _method_name: str, event_dict: EventDict) -> EventDict:
    for key in list(event_dict):
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = "[REDACTED]"
    return event_dict


def level_number(level: str) -> int:
    """Map a level name such as "warning" to its logging constant; unknown names give INFO."""
    number = logging.getLevelName((level or "").upper())
    return number if isinstance(number, int) else logging.INFO


def setup_logging(level: str = "INFO", format: str = "console") -> None:
    """Configure structlog for the whole process.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR)
        format: "json" for machine-readable output, anything else for console
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
    ]
    if format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_number(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
        cache_logger_on_first_use=True,
    )
