from __future__ import annotations

import logging
import sys
from typing import Any

import structlog


def _level(name: str) -> int:
    return logging.getLevelNamesMapping().get(name.upper(), logging.INFO)


def configure_logging(level: str, json_logs: bool = True) -> None:
    """Route stdlib and structlog output to stdout at ``level``.

    JSON lines in deployed environments, colored console output otherwise.
    Context bound with ``structlog.contextvars`` (webhook event id and type)
    is merged into every line.
    """
    logging.basicConfig(level=_level(level), format='%(message)s', stream=sys.stdout)

    if json_logs:
        tail = [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        tail = [structlog.processors.format_exc_info, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt='iso'),
            *tail,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_level(level)),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    return structlog.get_logger(name).bind(component=name)
