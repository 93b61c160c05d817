"""Error handlers that turn application errors into wire responses."""

from typing import Any

from .base import ApplicationError, ErrorCode, ErrorLevel
from .error_context import ErrorContext
from .logging import get_logger

logger = get_logger(__name__)

_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.DB_RECORD_NOT_FOUND: 404,
    ErrorCode.INVALID_INPUT: 422,
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.CONFLICT: 409,
    ErrorCode.TIMEOUT: 504,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.AUTHENTICATION_FAILED: 401,
}


class ErrorHandler:
    """Formats errors for API and tool responses."""

    def status_code_for(self, error: Exception) -> int:
        if isinstance(error, ApplicationError):
            return _STATUS_BY_CODE.get(error.code, 503)
        return 500

    def _format_response(
        self,
        error_context: ErrorContext,
        level: ErrorLevel,
        additional_context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response: dict[str, Any] = {
            "error": str(error_context.error),
            "error_code": ErrorCode.PROCESSING_FAILED.value,
            "level": level.value,
            "trace_id": error_context.trace_id,
            "timestamp": error_context.timestamp.isoformat(),
        }

        if isinstance(error_context.error, ApplicationError):
            response.update(error_context.error.to_dict())

        if additional_context and additional_context.get("suggested_solution"):
            response["suggested_solution"] = additional_context["suggested_solution"]

        return response

    def handle_sync(self, error: Exception, level: ErrorLevel, context: dict[str, Any]) -> dict[str, Any]:
        """Log ``error`` and return its response body."""
        error_context = ErrorContext(error, **{k: v for k, v in context.items() if k != "error_context"})
        logger.log(level.to_logging_level(), f"Handled {error.__class__.__name__}: {error!s}")
        return self._format_response(error_context, level, context)

    async def handle_async(self, error: Exception, level: ErrorLevel, context: dict[str, Any]) -> dict[str, Any]:
        return self.handle_sync(error, level, context)
