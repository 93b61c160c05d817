"""Error taxonomy primitives: levels, codes and structured details.

Every ``ApplicationError`` carries an ``ErrorDetails`` model so handlers can
log it as structured data and tools can return it as JSON unchanged.
"""

import logging
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from logfire.integrations.pydantic import PluginSettings
from pydantic import BaseModel, ConfigDict, Field, field_serializer


class ErrorLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    def to_logging_level(self) -> int:
        return getattr(logging, self.name)


class ErrorCode(str, Enum):
    """Stable codes returned on the wire; numbering groups them by layer."""

    # Caller errors (1xxx)
    INVALID_REQUEST = "1001"
    INVALID_INPUT = "1002"
    NOT_FOUND = "1003"
    PROCESSING_FAILED = "1004"
    TIMEOUT = "1007"
    CONFLICT = "1008"

    # Upstream providers (2xxx)
    AUTHENTICATION_FAILED = "2001"
    RATE_LIMITED = "2003"
    CIRCUIT_OPEN = "2005"

    # Graph store (3xxx)
    DB_CONNECTION = "3001"
    DB_QUERY = "3002"
    DB_RECORD_NOT_FOUND = "3004"
    DB_OPERATION = "3005"

    # Infrastructure (5xxx)
    SERVICE_UNAVAILABLE = "5002"

    # Persistence outcomes (6xxx)
    STORAGE_OPERATION = "6003"
    PARTIAL_CHUNK_FAILURE = "6004"


class ErrorDetails(BaseModel, plugin_settings=PluginSettings(logfire={"record": "all"})):
    """Where an error happened; subclasses add what the caller needs to react."""

    model_config = ConfigDict(extra="allow")

    source: str = Field(description="Component that raised the error")
    operation: str = Field(description="Operation in progress")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_serializer("timestamp")
    def serialize_timestamp(self, timestamp: datetime) -> str:
        return timestamp.isoformat()


class ValidationErrorDetails(ErrorDetails):
    field: str | None = Field(None, description="Argument that failed validation")
    actual_value: Any = Field(None, description="Value that was rejected")
    constraint: str | None = Field(None, description="Rule the value broke")


class ResourceErrorDetails(ErrorDetails):
    resource_id: str | None = Field(None, description="Id that was looked up")
    resource_type: str = Field(description="message, tool_call, cluster, job...")
    action: str = Field(description="read, edit, delete...")


class ServiceErrorDetails(ErrorDetails):
    service_name: str = Field(description="Upstream that failed (voyage, graph_store...)")
    endpoint: str | None = Field(None, description="Upstream call or model name")
    status_code: int | None = Field(None, description="HTTP or provider status code")


class DatabaseErrorDetails(ServiceErrorDetails):
    query_type: str | None = Field(None, description="read, write, vector...")
    label: str | None = Field(None, description="Graph node label")
    logical_id: str | None = Field(None, description="Logical entity id the write belonged to")
    chunk_count: int | None = Field(None, description="Size of the chunk set being written")


class ApplicationError(Exception):
    """Base class for all application errors."""

    def __init__(
        self,
        message: str,
        code: ErrorCode,
        level: ErrorLevel = ErrorLevel.ERROR,
        details: ErrorDetails | dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.level = level

        if details is None:
            self.details = ErrorDetails(source="unknown", operation="unknown")
        elif isinstance(details, dict):
            details = dict(details)
            source = details.pop("source", "unknown")
            operation = details.pop("operation", "unknown")
            self.details = ErrorDetails(source=source, operation=operation, **details)
        else:
            self.details = details

        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Stable wire shape for tool and HTTP responses."""
        return {
            "error": self.message,
            "error_code": self.code.value,
            "error_type": self.__class__.__name__,
            "details": self.details.model_dump(mode="json"),
        }
