"""Structured logging for Treehouse.

Log events go through structlog into the stdlib ``treehouse`` logger.
Embedded in another process (``treehouse.setup`` in a dev server), no
handler is installed: the host's logging configuration decides where
events go, and nothing is ever printed to stdout. The CLI attaches a
console handler on stderr for the duration of a command.
"""

import logging
import sys
from typing import Any, TextIO

import structlog

LOGGER_NAME = "treehouse"

_handler: logging.Handler | None = None


def _processors() -> list[Any]:
    return [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.dev.ConsoleRenderer(
            colors=False,
            exception_formatter=structlog.dev.plain_traceback,
        ),
    ]


def configure_defaults() -> None:
    """Route structlog through stdlib logging without adding handlers."""
    structlog.configure(
        processors=_processors(),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def configure_logging(level: str = "WARNING", stream: TextIO | None = None) -> None:
    """Show Treehouse events at ``level`` and above on ``stream``.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
        stream: Destination stream. Defaults to stderr so command output
            on stdout can be piped.
    """
    global _handler
    reset_logging()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger = logging.getLogger(LOGGER_NAME)
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    _handler = handler


def reset_logging() -> None:
    """Remove the handler added by configure_logging and restore defaults."""
    global _handler
    logger = logging.getLogger(LOGGER_NAME)
    if _handler is not None:
        logger.removeHandler(_handler)
        _handler = None
    logger.setLevel(logging.NOTSET)
    configure_defaults()


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (usually __name__).

    Returns:
        A bound structlog logger.
    """
    if not structlog.is_configured():
        configure_defaults()
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context variables that will be included in all subsequent logs.

    The CLI binds ``project`` and ``branch`` here.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()
