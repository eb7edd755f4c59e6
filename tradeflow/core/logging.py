"""Structured logging for the pipeline, via structlog.

Pipeline modules log through ``structlog.get_logger(__name__)``.  Nothing
is rendered until the host calls :func:`setup_logging` (or
:func:`setup_logging_from_settings`) once at startup.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog

from tradeflow.core.errors import ConfigError

if TYPE_CHECKING:
    from tradeflow.core.config import Settings

_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    name = level.upper()
    if name not in _LEVELS:
        raise ConfigError(f"Unknown log level {level!r}.  Use one of {sorted(_LEVELS)}")
    return logging.getLevelName(name)


def setup_logging(
    *,
    level: int | str = logging.INFO,
    json: bool | None = None,
    **context: Any,
) -> None:
    """Route structlog and stdlib logging to stderr.

    ``json`` picks the renderer; by default JSON lines unless stderr is a
    terminal.  Keyword ``context`` (e.g. ``service="tradeflow"``) is bound
    into every event for the life of the process.
    """
    resolved = _resolve_level(level)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    use_json = not sys.stderr.isatty() if json is None else json
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if use_json else structlog.dev.ConsoleRenderer()
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(resolved)

    structlog.contextvars.clear_contextvars()
    if context:
        structlog.contextvars.bind_contextvars(**context)


def setup_logging_from_settings(settings: Settings, **context: Any) -> None:
    """:func:`setup_logging` at ``settings.log_level``, tagging events with the calendar."""
    setup_logging(level=settings.log_level, calendar=settings.calendar, **context)
