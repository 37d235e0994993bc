"""
Centralized logging configuration using structlog.

Every service module logs through ``get_logger(__name__)`` with keyword
context (data_source_id, rollback_point_id, operation_id, ...) so that
checkpoint and restore activity can be followed in JSON logs.
"""

import logging
import sys
import os

import structlog


def configure_logging(
    json_output: bool = None,
    log_level: str = None
) -> None:
    """
    Configure structured logging for the entire application.

    Args:
        json_output: If True, output JSON format. If None, read LOG_FORMAT.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR). Defaults to LOG_LEVEL or INFO.
    """
    if json_output is None:
        json_output = os.getenv("LOG_FORMAT", "json").lower() == "json"

    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    level = getattr(logging, log_level, logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # stdlib loggers (pymongo layer) share the same stream and level
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("pymongo").setLevel(logging.WARNING)


def get_logger(name: str = None) -> structlog.BoundLogger:
    """
    Get a structlog logger instance.

    Args:
        name: Logger name, typically __name__ from the calling module.
    """
    return structlog.get_logger(name)
