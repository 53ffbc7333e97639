"""Structured logging for kubeconverge.

Log lines are JSON objects written to stderr so stdout stays free for the
watch report. Every line carries ``ts``, ``level``, ``component`` and
``event``; resource loggers add ``resource`` and a running watch adds the
target ``namespace`` and ``kube_context``.
"""

from __future__ import annotations

import logging
import sys
from typing import TextIO, cast

import structlog
from structlog.typing import FilteringBoundLogger

# Names accepted by KUBECONVERGE_LOG_LEVEL and --log-level.
LOG_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

SUPPRESSED_OUTPUT: str = "<suppressed sensitive output>"


def resolve_level(level: str) -> int:
    """Map a level name to its numeric value.

    Raises:
        ValueError: if *level* is not one of :data:`LOG_LEVELS`.
    """
    try:
        return LOG_LEVELS[level.strip().lower()]
    except KeyError:
        raise ValueError(f"Invalid log level {level!r}; expected one of {sorted(LOG_LEVELS)}") from None


def setup_logging(level: str = "info", *, stream: TextIO | None = None) -> None:
    """Configure structlog for JSON output to *stream* (stderr by default)."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(resolve_level(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=True,
    )


def bind_cluster_context(namespace: str, context: str) -> None:
    """Tag every later log line with the cluster target of the watch."""
    structlog.contextvars.bind_contextvars(namespace=namespace, kube_context=context)


def get_logger(component: str) -> FilteringBoundLogger:
    """Get a logger bound with a component name."""
    return cast(FilteringBoundLogger, structlog.get_logger(component=component))


def redact_output(text: str, sensitive: bool) -> str:
    """Return *text* unless it belongs to a sensitive call."""
    return SUPPRESSED_OUTPUT if sensitive else text
