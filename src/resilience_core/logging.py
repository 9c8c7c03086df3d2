"""Structured logging for resilience events.

Library modules emit dotted events (``retry.scheduled``,
``circuit_breaker.state_changed``, ``idempotency.deduplicated``) with keyword
fields. ``configure_structlog`` wires those through stdlib logging and tags
each event with the component that produced it.
"""

from __future__ import annotations

import logging
import sys
from typing import Literal, Protocol

import structlog

_LOG_LEVELS: dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

COMPONENTS = frozenset({"circuit_breaker", "idempotency", "retry"})

_StdlibLogger = logging.Logger | logging.LoggerAdapter[logging.Logger]


class StructuredLogger(Protocol):
    """Logger accepting an event name plus keyword fields."""

    def info(self, event: str, **kwargs: object) -> None:
        """Log an informational event."""

    def warning(self, event: str, **kwargs: object) -> None:
        """Log a warning event."""


def get_log_level_value(level: str) -> int:
    """Return the stdlib level for ``level`` (case-insensitive)."""
    normalized = level.strip().upper()
    try:
        return _LOG_LEVELS[normalized]
    except KeyError as error:
        choices = ", ".join(sorted(_LOG_LEVELS))
        raise ValueError(f"log_level must be one of: {choices}") from error


def add_component(
    _: object,
    __: str,
    event_dict: structlog.typing.EventDict,
) -> structlog.typing.EventDict:
    """Tag resilience events with ``component`` taken from the event prefix.

    ``retry.scheduled`` gets ``component="retry"``. Events outside the known
    namespaces, and events that already carry a component, pass through.
    """
    event = event_dict.get("event")
    if isinstance(event, str) and "component" not in event_dict:
        prefix, dot, _rest = event.partition(".")
        if dot and prefix in COMPONENTS:
            event_dict["component"] = prefix
    return event_dict


def _select_renderer(json_logs: bool | None) -> structlog.types.Processor:
    if json_logs is None:
        json_logs = not sys.stderr.isatty()
    if json_logs:
        return structlog.processors.JSONRenderer(sort_keys=True)
    return structlog.dev.ConsoleRenderer()


def _log(
    logger: StructuredLogger | _StdlibLogger,
    level: Literal["info", "warning"],
    event: str,
    **fields: object,
) -> None:
    method = getattr(logger, level)
    if isinstance(logger, (logging.Logger, logging.LoggerAdapter)):
        method(event, extra=fields)
        return
    method(event, **fields)


def log_info(
    logger: StructuredLogger | _StdlibLogger,
    event: str,
    **fields: object,
) -> None:
    """Log an informational event on a structlog or stdlib logger."""
    _log(logger, "info", event, **fields)


def log_warning(
    logger: StructuredLogger | _StdlibLogger,
    event: str,
    **fields: object,
) -> None:
    """Log a warning event on a structlog or stdlib logger."""
    _log(logger, "warning", event, **fields)


def configure_structlog(
    *,
    log_level: str,
    json_logs: bool | None = None,
) -> structlog.stdlib.BoundLogger:
    """Route structlog and stdlib logging through one stderr handler.

    Args:
        log_level: Minimum level name, e.g. ``"INFO"``.
        json_logs: Force JSON (``True``) or console (``False``) output.
            ``None`` picks JSON unless stderr is a TTY.

    Per-call context (integration, order id) bound with
    ``structlog.contextvars.bind_contextvars`` is merged into every event.
    Calling this again replaces the previous configuration.
    """
    level_value = get_log_level_value(log_level)
    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        add_component,
        timestamper,
    ]

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _select_renderer(json_logs),
            ],
        )
    )
    logging.basicConfig(
        format="%(message)s",
        handlers=[handler],
        level=level_value,
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.add_logger_name,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    return structlog.stdlib.get_logger("resilience_core")
