"""Logging setup for the engine.

Modules log through ``logging.getLogger(__name__)``; nothing is emitted until
an application calls ``configure_logging``.
"""

from __future__ import annotations

import logging

from rich.logging import RichHandler

_engine_logger = logging.getLogger("proposal_engine")
_engine_logger.addHandler(logging.NullHandler())


def configure_logging(
    level: int = logging.INFO,
    handler: logging.Handler | None = None,
    format_string: str | None = None,
) -> None:
    """
    Configure engine logging.

    Args:
        level: Log level for all engine loggers (default: INFO)
        handler: Custom handler (default: RichHandler on stderr)
        format_string: Custom format string for the handler
    """
    if handler is None:
        handler = RichHandler(rich_tracebacks=True, show_path=False)
        format_string = format_string or "%(name)s: %(message)s"

    if format_string is not None:
        handler.setFormatter(logging.Formatter(format_string))

    for existing in list(_engine_logger.handlers):
        if not isinstance(existing, logging.NullHandler):
            _engine_logger.removeHandler(existing)

    _engine_logger.addHandler(handler)
    _engine_logger.setLevel(level)

