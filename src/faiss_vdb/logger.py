"""Structured logging configuration for the vector index engine."""

from __future__ import annotations

import logging
import sys
from typing import IO, Any

import structlog

_ENGINE = "faiss_vdb"


def _level_number(level: str) -> int:
    return getattr(logging, level.upper(), logging.INFO)


def configure(level: str = "INFO", json_out: bool = True, stream: IO[str] | None = None) -> structlog.BoundLogger:
    """Configure structlog for the engine and return the root engine logger.

    Log lines go to ``stream`` (stderr by default) so command output on stdout
    stays machine readable.
    """
    target = stream if stream is not None else sys.stderr
    logging.basicConfig(level=_level_number(level), stream=target, force=True)
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(sort_keys=True) if json_out else structlog.dev.ConsoleRenderer(),
    ]
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_level_number(level)),
        logger_factory=structlog.PrintLoggerFactory(file=target),
        context_class=dict,
        cache_logger_on_first_use=False,
    )
    return get_logger("engine")


def get_logger(component: str, **context: Any) -> structlog.BoundLogger:
    """Return a logger bound to an engine ``component`` and extra context."""
    return structlog.get_logger(_ENGINE).bind(component=component, **context)
