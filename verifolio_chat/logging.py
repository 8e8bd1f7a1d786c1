"""Structured logging for Verifolio Chat.

Service events go through structlog. Library records on the standard
``logging`` module (aiohttp access log, httpx) share stderr and the level;
httpx is held at WARNING so request URLs stay out of the log.
"""

import logging
import sys
from typing import Any

import structlog

from verifolio_chat.config import get_config

_QUIET_LOGGERS = ("httpx", "httpcore")


def configure_logging(level: str | None = None) -> None:
    """Configure structlog from the ``logging`` config section.

    Args:
        level: Overrides ``logging.level`` from config (CLI ``--verbose``)
    """
    config = get_config()
    level_name = (level or config.logging.level).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if config.logging.format == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer(ensure_ascii=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr, level=log_level, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, log_level))


def bind_request(request_id: str, **fields: Any) -> None:
    """Attach ``request_id`` (and extra fields) to every event of this task."""
    structlog.contextvars.bind_contextvars(request_id=request_id, **fields)


def clear_request(*names: str) -> None:
    structlog.contextvars.unbind_contextvars("request_id", *names)


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Logger for a module, usually ``get_logger(__name__)``."""
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
