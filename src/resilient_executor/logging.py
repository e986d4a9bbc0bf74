"""Logging helpers shared by the executor and the services embedding it.

Library modules log through stdlib loggers with ``extra=`` fields. Services
that want structured output call :func:`configure_structlog` once at startup;
stdlib and structlog records then share one rendering pipeline, and fields
bound with :func:`bound_execution_context` appear on both.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import IO, Literal, Protocol

import structlog
from structlog.typing import EventDict, Processor

LOG_LEVEL_NAMES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_StdlibLogger = logging.Logger | logging.LoggerAdapter[logging.Logger]
_Level = Literal["info", "warning", "error", "exception"]

# ``extra=`` keys colliding with these make ``Logger.makeRecord`` raise.
_RESERVED_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}
_RESERVED_PREFIX = "field_"


class StructuredLogger(Protocol):
    """Logger taking an event name plus keyword fields, as structlog does."""

    def info(self, event: str, **kwargs: object) -> None:
        """Log an informational event."""

    def warning(self, event: str, **kwargs: object) -> None:
        """Log a warning event."""

    def error(self, event: str, **kwargs: object) -> None:
        """Log an error event."""

    def exception(self, event: str, **kwargs: object) -> None:
        """Log an error event with the active traceback."""


def get_log_level_value(level: str) -> int:
    """Return the stdlib level constant for a level name such as ``"info"``."""
    normalized = level.strip().upper()
    if normalized not in LOG_LEVEL_NAMES:
        choices = ", ".join(sorted(LOG_LEVEL_NAMES))
        raise ValueError(f"log_level must be one of: {choices}")
    return logging.getLevelNamesMapping()[normalized]


@contextmanager
def bound_execution_context(**fields: object) -> Iterator[None]:
    """Bind per-call fields (destination, operation, ...) to every log line.

    Bindings live in ``structlog.contextvars`` and so follow the current
    asyncio task; concurrent calls never see each other's fields. ``None``
    values are not bound.
    """
    present = {key: value for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**present):
        yield


def _stdlib_extra(fields: Mapping[str, object]) -> dict[str, object]:
    return {
        (f"{_RESERVED_PREFIX}{key}" if key in _RESERVED_RECORD_ATTRS else key): value
        for key, value in fields.items()
    }


def _merge_stdlib_extra(
    _: object,
    __: str,
    event_dict: EventDict,
) -> EventDict:
    """Lift ``extra=`` fields of stdlib records into the event dict."""
    record = event_dict.get("_record")
    if not isinstance(record, logging.LogRecord):
        return event_dict
    for key, value in record.__dict__.items():
        if key in _RESERVED_RECORD_ATTRS or key.startswith("_") or key in event_dict:
            continue
        event_dict[key] = value
    return event_dict


def _log(
    logger: StructuredLogger | _StdlibLogger,
    level: _Level,
    event: str,
    **fields: object,
) -> None:
    method = getattr(logger, level)
    if isinstance(logger, (logging.Logger, logging.LoggerAdapter)):
        exc_info = fields.pop("exc_info", level == "exception")
        method(event, exc_info=exc_info, extra=_stdlib_extra(fields))
        return
    method(event, **fields)


def log_info(
    logger: StructuredLogger | _StdlibLogger, event: str, **fields: object
) -> None:
    _log(logger, "info", event, **fields)


def log_warning(
    logger: StructuredLogger | _StdlibLogger, event: str, **fields: object
) -> None:
    _log(logger, "warning", event, **fields)


def log_error(
    logger: StructuredLogger | _StdlibLogger, event: str, **fields: object
) -> None:
    _log(logger, "error", event, **fields)


def log_exception(
    logger: StructuredLogger | _StdlibLogger, event: str, **fields: object
) -> None:
    """Log an error event with the active exception's traceback."""
    _log(logger, "exception", event, **fields)


def _select_renderer(stream: IO[str], json_output: bool | None) -> Processor:
    if json_output is None:
        json_output = not stream.isatty()
    if json_output:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def configure_structlog(
    *,
    log_level: str,
    json_output: bool | None = None,
    stream: IO[str] | None = None,
) -> structlog.stdlib.BoundLogger:
    """Route structlog and stdlib logging through one structured handler.

    Safe to call repeatedly; each call replaces the root handler.

    Args:
        log_level: Root level name, e.g. ``"INFO"``.
        json_output: Force JSON (``True``) or console (``False``) rendering.
            By default JSON is used unless ``stream`` is a TTY.
        stream: Output stream. Defaults to ``sys.stderr``.

    Returns:
        A structlog logger bound to the configured pipeline.
    """
    level_value = get_log_level_value(log_level)
    output = sys.stderr if stream is None else stream
    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.contextvars.merge_contextvars,
            _merge_stdlib_extra,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            timestamper,
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _select_renderer(output, json_output),
        ],
    )
    handler = logging.StreamHandler(output)
    handler.setFormatter(formatter)
    logging.basicConfig(handlers=[handler], level=level_value, force=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            timestamper,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    return structlog.stdlib.get_logger("resilient_executor")
