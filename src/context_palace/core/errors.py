"""Specific error types for Context Palace.

The taxonomy follows what callers need to do with a failure: fix the call
(invalid argument, conflict), treat the item as absent (not found), or rely
on a fallback/retry (timeout, upstream failure, storage).
"""

from .base import (
    ApplicationError,
    DatabaseErrorDetails,
    ErrorCode,
    ErrorDetails,
    ErrorLevel,
    ResourceErrorDetails,
    ServiceErrorDetails,
    ValidationErrorDetails,
)


class NotFoundError(ApplicationError):
    """An id has no live entity (absent, soft-deleted or a grouping key)."""

    def __init__(self, message: str, details: ResourceErrorDetails | dict | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.NOT_FOUND,
            level=ErrorLevel.INFO,
            details=details,
        )

    @classmethod
    def for_id(cls, entity_id: str, resource_type: str = "entity", action: str = "read") -> "NotFoundError":
        return cls(
            message=f"No {resource_type} with id '{entity_id}'",
            details=ResourceErrorDetails(
                source="repository",
                operation=action,
                resource_id=entity_id,
                resource_type=resource_type,
                action=action,
            ),
        )


class InvalidArgumentError(ApplicationError):
    """Malformed tool or API input."""

    def __init__(self, message: str, details: ValidationErrorDetails | dict | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.INVALID_INPUT,
            level=ErrorLevel.WARNING,
            details=details,
        )


class ConflictError(ApplicationError):
    """Attempt to edit a chunk directly instead of its logical entity."""

    def __init__(self, message: str, details: ResourceErrorDetails | dict | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.CONFLICT,
            level=ErrorLevel.WARNING,
            details=details,
        )


class ServiceError(ApplicationError):
    """Error from external service calls (upstream failure)."""

    def __init__(
        self,
        message: str,
        details: ServiceErrorDetails | dict | None = None,
        code: ErrorCode = ErrorCode.SERVICE_UNAVAILABLE,
    ):
        super().__init__(
            message=message,
            code=code,
            level=ErrorLevel.ERROR,
            details=details
            or ServiceErrorDetails(source="service", operation="external_call", service_name="unknown"),
        )


class AuthenticationError(ApplicationError):
    """Authentication-related errors."""

    def __init__(self, message: str, details: ErrorDetails | dict | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.AUTHENTICATION_FAILED,
            level=ErrorLevel.ERROR,
            details=details,
        )


class ProcessingError(ApplicationError):
    """General processing errors."""

    def __init__(self, message: str, details: ErrorDetails | dict | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.PROCESSING_FAILED,
            level=ErrorLevel.ERROR,
            details=details,
        )


class RateLimitError(ApplicationError):
    """Rate limiting errors."""

    def __init__(self, message: str, details: ServiceErrorDetails | dict | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.RATE_LIMITED,
            level=ErrorLevel.WARNING,
            details=details,
        )


class UpstreamTimeoutError(ApplicationError):
    """An embedding, search or storage call exceeded its deadline."""

    def __init__(self, message: str, details: ErrorDetails | dict | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.TIMEOUT,
            level=ErrorLevel.WARNING,
            details=details,
        )


class StorageError(ApplicationError):
    """Terminal persistence failure after local retries."""

    def __init__(
        self,
        message: str,
        details: DatabaseErrorDetails | dict | None = None,
        code: ErrorCode = ErrorCode.STORAGE_OPERATION,
    ):
        super().__init__(
            message=message,
            code=code,
            level=ErrorLevel.ERROR,
            details=details,
        )


class PartialChunkFailureError(StorageError):
    """One chunk of a multi-chunk write failed; the whole set was aborted."""

    def __init__(self, message: str, details: DatabaseErrorDetails | dict | None = None):
        super().__init__(message=message, details=details, code=ErrorCode.PARTIAL_CHUNK_FAILURE)
