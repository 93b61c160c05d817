"""Centralized logging setup with Logfire integration.

Logfire itself is configured from the environment (``LOGFIRE_TOKEN``,
``LOGFIRE_SERVICE_NAME``, ``LOGFIRE_ENVIRONMENT``); this module wires
structlog so both structlog and stdlib records reach the console and Logfire.
"""

import logging
import sys
from typing import TextIO

import logfire
import structlog
from structlog.processors import CallsiteParameter, CallsiteParameterAdder
from structlog.types import EventDict, Processor, WrappedLogger
from structlog.typing import FilteringBoundLogger


def add_logfire_context(
    _logger: WrappedLogger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Promote fields Logfire should index as attributes."""
    if "error" in event_dict:
        event_dict["error_type"] = type(event_dict["error"]).__name__
    if "strategy" in event_dict:
        event_dict["index_strategy"] = str(event_dict["strategy"])
    return event_dict


def setup_logging(level: str = "INFO", colors: bool = True, stream: TextIO | None = None) -> None:
    """Set up application-wide logging with Logfire and structlog.

    Args:
        level: Minimum level for stdlib loggers (``DEBUG``, ``INFO``...)
        colors: Whether the console renderer emits ANSI colors
        stream: Output stream, stdout by default; the MCP stdio bridge needs stderr
    """
    stream = stream or sys.stdout
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        CallsiteParameterAdder(
            parameters=[
                CallsiteParameter.FILENAME,
                CallsiteParameter.LINENO,
                CallsiteParameter.FUNC_NAME,
            ]
        ),
        add_logfire_context,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        # Must come before the final renderer
        logfire.StructlogProcessor(),
        structlog.dev.ConsoleRenderer(colors=colors),
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )

    log_level = logging.getLevelName(level.upper())
    logging.basicConfig(format="%(message)s", stream=stream, level=log_level)

    # Route stdlib records (neo4j driver, httpx, apscheduler) through structlog
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(colors=colors),
        foreign_pre_chain=processors[:-2],
    )
    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    # The neo4j driver is chatty at INFO
    logging.getLogger("neo4j").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> FilteringBoundLogger:
    """Get a structured logger instance that's properly configured with Logfire.

    Args:
        name: The name of the logger (usually __name__)

    Returns:
        A configured structlog logger instance
    """
    return structlog.get_logger(name)
