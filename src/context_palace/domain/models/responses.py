"""Stable response shapes returned by the retrieval tools."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from .entities import Entity, Message, ToolCall


class ChunkFlags(BaseModel):
    is_chunk: bool = False
    chunk_index: int | None = None
    chunk_parent_id: str | None = None


class MessageResponse(ChunkFlags):
    id: str
    content: str
    role: str
    timestamp: datetime
    parent_id: str | None = None
    metadata: dict[str, Any] | None = None
    edited: bool = False

    @classmethod
    def from_message(cls, message: Message) -> "MessageResponse":
        return cls(
            id=message.id,
            content=message.content,
            role=message.role.value,
            timestamp=message.timestamp,
            parent_id=message.parent_id,
            metadata=message.metadata or None,
            edited=message.edited,
            is_chunk=message.is_chunk,
            chunk_index=message.chunk_index,
            chunk_parent_id=message.chunk_parent_id,
        )


class ToolCallResponse(ChunkFlags):
    id: str
    tool_name: str
    arguments: str
    result: str
    timestamp: datetime
    message_id: str | None = None

    @classmethod
    def from_tool_call(cls, tool_call: ToolCall) -> "ToolCallResponse":
        return cls(
            id=tool_call.id,
            tool_name=tool_call.tool_name,
            arguments=tool_call.arguments,
            result=tool_call.result,
            timestamp=tool_call.timestamp,
            message_id=tool_call.message_id,
            is_chunk=tool_call.is_chunk,
            chunk_index=tool_call.chunk_index,
            chunk_parent_id=tool_call.chunk_parent_id,
        )


EntityResponse = MessageResponse | ToolCallResponse


def entity_response(entity: Entity) -> EntityResponse:
    if isinstance(entity, ToolCall):
        return ToolCallResponse.from_tool_call(entity)
    return MessageResponse.from_message(entity)


class SearchResult(BaseModel):
    id: str
    snippet: str
    timestamp: datetime
    score: float
    type: Literal["message", "tool_call"]
    is_chunk: bool = False


class ChunkedEntityResponse(BaseModel):
    """A logical entity with all of its chunks, ordered by chunk index."""

    id: str
    content: str
    chunk_count: int
    chunks: list[EntityResponse] = Field(default_factory=list)


class ClusterResponse(BaseModel):
    cluster_id: str
    summary: str
    start: datetime
    end: datetime
    count: int
    items: list[EntityResponse] = Field(default_factory=list)


class ThreadResponse(BaseModel):
    """Reply chain around a message, oldest first."""

    message_id: str
    depth: int
    messages: list[MessageResponse] = Field(default_factory=list)


class SearchAndRetrieveResponse(BaseModel):
    query: str
    results: list[SearchResult] = Field(default_factory=list)
    items: list[EntityResponse] = Field(default_factory=list)


class EntityListResponse(BaseModel):
    items: list[EntityResponse] = Field(default_factory=list)


class SearchResponse(BaseModel):
    query: str
    results: list[SearchResult] = Field(default_factory=list)


class PeriodResponse(BaseModel):
    period: str
    start: datetime | None = None
    end: datetime | None = None
    items: list[MessageResponse] = Field(default_factory=list)
