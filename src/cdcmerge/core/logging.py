# src/cdcmerge/core/logging.py
"""Structured logging for cdcmerge.

structlog renders everything: engine modules log through get_logger(), and
stdlib records (SQLAlchemy, anything using logging.getLogger) are routed
through the same processor chain by ProcessorFormatter, so one delivery
produces one uniform stream of JSON or console lines.

Per-batch context (destination, table) is bound with batch_context() into
contextvars. Storage wrappers that never see a destination still log it,
because merge_contextvars runs first in the chain.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.stdlib import ProcessorFormatter

from cdcmerge.core.config import LoggingSettings

# Parent loggers of chatty drivers; child loggers inherit the level unless a
# driver sets its own (SQLAlchemy's echo=True does, on purpose).
_DRIVER_LOGGERS: tuple[str, ...] = ("sqlalchemy",)

_HANDLER_NAME = "cdcmerge"


def _drop_formatter_keys(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    # ProcessorFormatter always sets both keys
    del event_dict["_record"]
    del event_dict["_from_structlog"]
    return event_dict


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]


def _renderers(json_output: bool) -> list[Any]:
    if json_output:
        return [_drop_formatter_keys, structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [_drop_formatter_keys, structlog.dev.ConsoleRenderer(colors=False)]


def configure_logging(
    settings: LoggingSettings | None = None,
    *,
    json_output: bool | None = None,
    level: str | None = None,
) -> None:
    """Configure structlog and the root stdlib logger.

    Keyword arguments override the matching field of settings. Calling this
    again replaces the handler installed by the previous call and leaves
    handlers installed by anything else (pytest, the host application) alone.
    """
    settings = settings or LoggingSettings()
    json_output = settings.json_output if json_output is None else json_output
    log_level = getattr(logging, (level or settings.level).upper())
    shared = _shared_processors()

    structlog.configure(
        processors=[*shared, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Reconfiguration must reach loggers created at import time
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(ProcessorFormatter(processors=_renderers(json_output), foreign_pre_chain=shared))

    root = logging.getLogger()
    for previous in [h for h in root.handlers if h.get_name() == _HANDLER_NAME]:
        root.removeHandler(previous)
    root.addHandler(handler)
    root.setLevel(log_level)

    driver_level = max(log_level, logging.WARNING)
    for name in _DRIVER_LOGGERS:
        logging.getLogger(name).setLevel(driver_level)


@contextmanager
def batch_context(**values: Any) -> Iterator[None]:
    """Bind values (destination, table) to every log line emitted in this thread."""
    with structlog.contextvars.bound_contextvars(**values):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger
