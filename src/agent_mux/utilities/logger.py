"""Structured logging using structlog.

All records go to stderr through stdlib logging and carry the ``[agent-mux]``
prefix, so they survive stderr filtering while stdout stays reserved for the
single result document.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog

LOG_PREFIX = "[agent-mux]"
DEBUG_ENV_VAR = "AGENT_MUX_DEBUG"

_PROCESSORS: list[Any] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


def _configure_structlog(json_output: bool = False) -> None:
    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[*_PROCESSORS, renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def debug_requested(environ: dict[str, str] | None = None) -> bool:
    """True when ``AGENT_MUX_DEBUG`` asks for verbose logging."""
    value = (environ if environ is not None else os.environ).get(DEBUG_ENV_VAR, "")
    return value.strip().lower() in ("1", "true", "yes")


def setup_logging(*, debug: bool = False, json_output: bool = False) -> None:
    """Configure structlog for the application.

    Args:
        debug: Enable DEBUG level logging. Otherwise only warnings are shown.
        json_output: Use JSON output format instead of console.
    """
    level = logging.DEBUG if debug or debug_requested() else logging.WARNING

    logging.basicConfig(
        format=f"{LOG_PREFIX} %(message)s",
        stream=sys.stderr,
        level=level,
        force=True,
    )
    _configure_structlog(json_output)


def get_logger(name: str = "agent_mux", **kwargs: Any) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name, **kwargs)


# Route structlog through stdlib even before setup_logging() runs, so nothing
# ever lands on stdout.
_configure_structlog()
