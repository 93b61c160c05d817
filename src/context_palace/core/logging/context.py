"""Request-scoped logging context.

Context set here is merged into every event by
``structlog.contextvars.merge_contextvars`` (see ``setup_logging``), so a
request id or tool name bound once shows up on every log line below it.
"""

from contextvars import ContextVar
from typing import Any

import structlog

_log_context: ContextVar[dict[str, Any] | None] = ContextVar("log_context", default=None)


def get_log_context() -> dict[str, Any]:
    """Return a copy of the current logging context."""
    context = _log_context.get()
    if context is None:
        context = {}
        _log_context.set(context)
    return context.copy()


def update_log_context(key: str, value: Any) -> None:
    """Set a single key in the logging context."""
    context = get_log_context()
    context[key] = value
    _log_context.set(context)
    structlog.contextvars.bind_contextvars(**{key: value})


def clear_log_context() -> None:
    """Drop all request-scoped context."""
    _log_context.set({})
    structlog.contextvars.clear_contextvars()
