"""Structured logging for authproxy.

``authproxy.main`` configures structlog at import and again once the
environment is known (JSON lines in production, console output in
development).  Every log line emitted while a proxied request is in flight
carries that request's ``request_id``, bound through structlog's contextvars.

Never pass full API keys, OTP codes or hashes as log fields.  Key prefixes and
numeric ids are safe to log.
"""

import logging
import sys

import structlog
from structlog.types import Processor


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging for the process.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_output: JSON lines when True, coloured console output otherwise.
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "authproxy") -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to ``name`` (usually ``__name__``)."""
    return structlog.get_logger(name)


def set_request_id(request_id: str) -> None:
    """Attach ``request_id`` to every log line emitted in the current context."""
    structlog.contextvars.bind_contextvars(request_id=request_id)
