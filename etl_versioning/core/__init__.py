"""Core module for logging and request/operation context."""

from .logging_config import configure_logging, get_logger
from .context import CorrelationIdMiddleware, bind_context, unbind_context, log_context

__all__ = [
    "configure_logging",
    "get_logger",
    "CorrelationIdMiddleware",
    "bind_context",
    "unbind_context",
    "log_context",
]
