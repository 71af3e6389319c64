"""
Structured logging configuration using structlog.

Provides:
- configure_logging(): Setup structlog with JSON/console output
- get_logger(name): Get a bound logger for a module
- LogContext: Context manager for adding temporary log context (user, thread, turn)
- bind_context(**kw): Bind context for the rest of the current task
"""

import logging
import sys
from typing import Any, Mapping, Optional

import structlog
from structlog.types import Processor

from iso_assistant.config import LOG_LEVEL, LOG_FORMAT, LOG_INCLUDE_TIMESTAMP


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """
    Configure structlog for the application.

    Args:
        level: Overrides LOG_LEVEL from config
        fmt: Overrides LOG_FORMAT from config ("json" or "console")
    """
    level = level or LOG_LEVEL
    fmt = fmt or LOG_FORMAT

    shared_processors: list[Processor] = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.contextvars.merge_contextvars,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if LOG_INCLUDE_TIMESTAMP:
        shared_processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if fmt == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[structlog.stdlib.filter_by_level] + shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Route stdlib records (uvicorn, psycopg_pool, tenacity) through the same renderer
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for noisy in ("httpx", "httpcore", "psycopg.pool", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger for a module.

    Args:
        name: Logger name (typically __name__)
    """
    return structlog.get_logger(name)


class LogContext:
    """
    Context manager for adding temporary context to logs.

    Keys left as None are not bound. Nested contexts restore the outer
    values on exit, so a turn's thread_id survives an inner agent context.

    Example:
        with LogContext(user_id="u1", thread_id="u1:default", interaction_id=42):
            logger.info("turn_started")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = {key: value for key, value in kwargs.items() if value is not None}
        self._tokens: Mapping[str, Any] = {}

    def __enter__(self) -> "LogContext":
        self._tokens = structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)


def bind_context(**kwargs: Any) -> None:
    """Bind context variables for the rest of the current task (e.g. one WebSocket connection)."""
    structlog.contextvars.bind_contextvars(**kwargs)
