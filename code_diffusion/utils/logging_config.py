"""
Logging configuration using structlog for structured logging.

This module provides centralized logging setup for the orchestration engine.
Every module obtains its logger with ``structlog.get_logger(__name__)`` and
logs snake_case events with key/value context such as ``workflow_id``,
``worker_id`` and ``stage``.
"""

from typing import Any

import structlog


def configure_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structured logging.

    Sets up structlog with a pipeline of processors that adds timestamps,
    log levels, stack traces and contextvars-bound context.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Render JSON lines; when False, render for a terminal
    """
    renderer: Any = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level.upper()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> Any:
    """Get a logger instance.

    Example:
        >>> log = get_logger(__name__)
        >>> log.info("stage_entered", workflow_id="wf-1", stage="exploring")
    """
    return structlog.get_logger(name)
