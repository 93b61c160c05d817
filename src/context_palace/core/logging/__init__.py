"""Structured logging for Context Palace (structlog + logfire)."""

from .context import clear_log_context, get_log_context, update_log_context
from .setup import get_logger, setup_logging

__all__ = [
    "clear_log_context",
    "get_log_context",
    "get_logger",
    "setup_logging",
    "update_log_context",
]
