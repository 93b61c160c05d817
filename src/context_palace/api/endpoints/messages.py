"""Entity write endpoints: store, edit and soft-delete."""

from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from context_palace.api.dependencies import get_context_service, get_index_config, resolve_config
from context_palace.core.config import IndexConfig
from context_palace.core.decorators import with_error_handling
from context_palace.core.logging import get_logger
from context_palace.domain.models import MessageResponse, MessageRole
from context_palace.services.context_service import ContextService

logger = get_logger(__name__)
router = APIRouter()


class StoreMessageRequest(BaseModel):
    """Request model for storing a message."""

    content: str = Field(..., min_length=1)
    role: MessageRole
    parent_id: str | None = Field(None, description="Message this one replies to")
    metadata: dict[str, Any] | None = None
    config: IndexConfig | None = Field(None, description="Per-request overrides of the index configuration")


class StoreToolCallRequest(BaseModel):
    """Request model for storing a tool call."""

    tool_name: str = Field(..., min_length=1)
    arguments: str = Field("", description="Serialized tool arguments")
    result: str = Field("", description="Serialized tool result")
    message_id: str | None = Field(None, description="Message that triggered the call")
    metadata: dict[str, Any] | None = None
    config: IndexConfig | None = None


class EditMessageRequest(BaseModel):
    content: str = Field(..., min_length=1)
    config: IndexConfig | None = None


class StoredResponse(BaseModel):
    id: str
    is_chunk: bool
    chunk_count: int = 0


class DeleteResponse(BaseModel):
    id: str
    deleted_ids: list[str]


@router.post("/messages", response_model=StoredResponse, status_code=status.HTTP_201_CREATED, operation_id="store_message")
@with_error_handling(reraise=True)
async def store_message(
    request: StoreMessageRequest,
    service: ContextService = Depends(get_context_service),
    defaults: IndexConfig = Depends(get_index_config),
) -> StoredResponse:
    """Store a message; oversized content is chunked transparently."""
    logger.info("Storing message", content_length=len(request.content), role=request.role.value)
    message = await service.store_message(
        content=request.content,
        role=request.role,
        config=resolve_config(defaults, request.config),
        parent_id=request.parent_id,
        metadata=request.metadata,
    )
    return StoredResponse(
        id=message.id,
        is_chunk=message.is_chunk,
        chunk_count=int(message.metadata.get("chunk_count", 0)) if message.is_chunk else 0,
    )


@router.post(
    "/tool-calls", response_model=StoredResponse, status_code=status.HTTP_201_CREATED, operation_id="store_tool_call"
)
@with_error_handling(reraise=True)
async def store_tool_call(
    request: StoreToolCallRequest,
    service: ContextService = Depends(get_context_service),
    defaults: IndexConfig = Depends(get_index_config),
) -> StoredResponse:
    """Store a tool call and its result."""
    tool_call = await service.store_tool_call(
        tool_name=request.tool_name,
        config=resolve_config(defaults, request.config),
        arguments=request.arguments,
        result=request.result,
        message_id=request.message_id,
        metadata=request.metadata,
    )
    return StoredResponse(
        id=tool_call.id,
        is_chunk=tool_call.is_chunk,
        chunk_count=int(tool_call.metadata.get("chunk_count", 0)) if tool_call.is_chunk else 0,
    )


@router.patch("/messages/{message_id}", response_model=MessageResponse, operation_id="edit_message")
@with_error_handling(reraise=True)
async def edit_message(
    message_id: str,
    request: EditMessageRequest,
    service: ContextService = Depends(get_context_service),
    defaults: IndexConfig = Depends(get_index_config),
) -> MessageResponse:
    """Replace a message's content; the previous version is kept in its edit history."""
    message = await service.edit_message(message_id, request.content, resolve_config(defaults, request.config))
    return MessageResponse.from_message(message)


@router.delete("/entities/{entity_id}", response_model=DeleteResponse, operation_id="delete_entity")
@with_error_handling(reraise=True)
async def delete_entity(
    entity_id: str,
    service: ContextService = Depends(get_context_service),
) -> DeleteResponse:
    """Soft-delete a message or tool call together with its chunks."""
    deleted_ids = await service.delete_entity(entity_id)
    return DeleteResponse(id=entity_id, deleted_ids=deleted_ids)

