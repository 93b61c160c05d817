"""Conversation entities: messages, tool calls and background topics."""

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field

from .base import EntityKind, GraphModel
from .utils import utc_now


class MessageRole(str, Enum):
    """Message roles in a conversation."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class EditRecord(BaseModel):
    """One superseded version of a message."""

    model_config = ConfigDict(frozen=True)

    content: str
    edited_at: datetime


class ConversationEntity(GraphModel):
    """Fields shared by messages and tool calls, including chunk flags.

    A chunked entity is stored as ``n`` nodes sharing a ``chunk_parent_id``
    grouping key. Chunk 0 carries the externally visible id, the snippet and
    all linkage; chunks 1..n-1 are reachable only through the grouping key.
    """

    json_fields: ClassVar[tuple[str, ...]] = ("metadata",)

    content: str
    snippet: str = ""
    embedding: list[float] | None = None
    token_count: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    deleted: bool = False

    is_chunk: bool = False
    chunk_index: int | None = None
    chunk_parent_id: str | None = None

    @property
    def is_logical(self) -> bool:
        """True for the externally addressable node (unchunked or chunk 0)."""
        return not self.is_chunk or self.chunk_index == 0

    @property
    def is_continuation(self) -> bool:
        return self.is_chunk and (self.chunk_index or 0) > 0


class Message(ConversationEntity):
    """A single message in a conversation."""

    json_fields: ClassVar[tuple[str, ...]] = ("metadata", "edit_history")

    kind: Literal[EntityKind.MESSAGE] = EntityKind.MESSAGE
    role: MessageRole
    parent_id: str | None = None
    edited: bool = False
    edit_history: list[EditRecord] = Field(default_factory=list)

    def with_edit(self, content: str, previous_content: str, at: datetime | None = None) -> "Message":
        """Return a copy carrying ``content`` with ``previous_content`` appended to the history.

        ``previous_content`` is the full logical content, which differs from
        ``self.content`` when the message is chunked.
        """
        record = EditRecord(content=previous_content, edited_at=at or utc_now())
        return self.model_copy(
            update={
                "content": content,
                "edited": True,
                "edit_history": [*self.edit_history, record],
            }
        )

    def __str__(self) -> str:
        return f"Message({self.role.value}, id={self.id[:8]}, content='{self.content[:40]}...')"


class ToolCall(ConversationEntity):
    """A tool invocation; ``content`` holds the serialized result (or a slice of it)."""

    kind: Literal[EntityKind.TOOL_CALL] = EntityKind.TOOL_CALL
    tool_name: str
    arguments: str = ""
    message_id: str | None = None

    @property
    def result(self) -> str:
        return self.content

    def __str__(self) -> str:
        return f"ToolCall({self.tool_name}, id={self.id[:8]})"


class Topic(GraphModel):
    """Background-computed group of semantically related entities."""

    json_fields: ClassVar[tuple[str, ...]] = ("member_ids",)

    kind: Literal[EntityKind.TOPIC] = EntityKind.TOPIC
    summary: str
    start: datetime
    end: datetime
    member_count: int = 0
    member_ids: list[str] = Field(default_factory=list)


Entity = Message | ToolCall

_ENTITY_TYPES: dict[EntityKind, type[Message] | type[ToolCall]] = {
    EntityKind.MESSAGE: Message,
    EntityKind.TOOL_CALL: ToolCall,
}


def entity_from_record(record: dict[str, Any]) -> Entity:
    """Route a stored property map to its model by ``kind``."""
    kind = EntityKind(record["kind"])
    return _ENTITY_TYPES[kind].from_neo4j_record(record)
