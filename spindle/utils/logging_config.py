"""
Structured logging setup.

Every module logs through ``structlog.get_logger(__name__)`` with snake_case
event names and key/value context. ``reconcile_context`` binds the resource
a reconcile pass works on, so each event logged during that pass carries
``kind``, ``namespace`` and ``name`` without repeating them.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

LOG_FORMATS = ("json", "console")


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structlog for the process.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: ``json`` for one JSON object per line, ``console`` for
            aligned human-readable lines

    Raises:
        ValueError: If the level or format is unknown
    """
    levels = logging.getLevelNamesMapping()
    if log_level.upper() not in levels:
        raise ValueError(f"unknown log level: {log_level}")
    if log_format not in LOG_FORMATS:
        raise ValueError(f"unknown log format: {log_format}")

    renderer: structlog.typing.Processor
    if log_format == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(levels[log_level.upper()]),
        context_class=dict,
        # stdout is left to CLI output.
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


@contextmanager
def reconcile_context(kind: str, namespace: str, name: str) -> Iterator[None]:
    """Bind the resource being reconciled to every event logged inside."""
    with structlog.contextvars.bound_contextvars(kind=kind, namespace=namespace, name=name):
        yield
