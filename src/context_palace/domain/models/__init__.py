"""Domain models for Context Palace."""

from .base import EntityKind, GraphModel
from .entities import (
    EditRecord,
    Entity,
    Message,
    MessageRole,
    ToolCall,
    Topic,
    entity_from_record,
)
from .index import (
    ClusterSummary,
    ContextIndex,
    IndexEntry,
    IndexItem,
    IndexStrategy,
    PeriodRollup,
)
from .responses import (
    ChunkedEntityResponse,
    ClusterResponse,
    EntityListResponse,
    EntityResponse,
    MessageResponse,
    PeriodResponse,
    SearchAndRetrieveResponse,
    SearchResponse,
    SearchResult,
    ThreadResponse,
    ToolCallResponse,
    entity_response,
)

__all__ = [
    "ChunkedEntityResponse",
    "ClusterResponse",
    "ClusterSummary",
    "ContextIndex",
    "EditRecord",
    "Entity",
    "EntityKind",
    "EntityListResponse",
    "EntityResponse",
    "GraphModel",
    "IndexEntry",
    "IndexItem",
    "IndexStrategy",
    "Message",
    "MessageResponse",
    "MessageRole",
    "PeriodResponse",
    "PeriodRollup",
    "SearchAndRetrieveResponse",
    "SearchResponse",
    "SearchResult",
    "ThreadResponse",
    "ToolCall",
    "ToolCallResponse",
    "Topic",
    "entity_from_record",
    "entity_response",
]
