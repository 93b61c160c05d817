"""Retrieval tool endpoints used by the model runtime and the MCP bridge."""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from context_palace.api.dependencies import get_dispatcher, get_index_config, resolve_config
from context_palace.core.config import IndexConfig
from context_palace.core.logging import get_logger, update_log_context
from context_palace.services.dispatcher import RetrievalToolDispatcher

logger = get_logger(__name__)
router = APIRouter()

MAX_BATCH_CALLS = 20


class ToolCallRequest(BaseModel):
    name: str = Field(..., description="Tool name from GET /api/v1/tools")
    arguments: dict[str, Any] = Field(default_factory=dict)
    config: IndexConfig | None = None


class ToolBatchRequest(BaseModel):
    """Independent read-only calls; results come back in request order."""

    calls: list[ToolCallRequest] = Field(..., min_length=1, max_length=MAX_BATCH_CALLS)
    config: IndexConfig | None = None


class ToolListResponse(BaseModel):
    tools: list[dict[str, Any]]


class ToolResultResponse(BaseModel):
    tool: str
    result: dict[str, Any]


class ToolBatchResponse(BaseModel):
    results: list[dict[str, Any]]


@router.get("", response_model=ToolListResponse, operation_id="list_tools")
async def list_tools(dispatcher: RetrievalToolDispatcher = Depends(get_dispatcher)) -> ToolListResponse:
    """Tool names, descriptions and argument schemas."""
    return ToolListResponse(tools=dispatcher.tool_definitions())


@router.post("/call", response_model=ToolResultResponse, operation_id="call_tool")
async def call_tool(
    request: ToolCallRequest,
    dispatcher: RetrievalToolDispatcher = Depends(get_dispatcher),
    defaults: IndexConfig = Depends(get_index_config),
) -> ToolResultResponse:
    """Run one retrieval tool. Errors map to 404/422/504 through the app's error handler."""
    update_log_context("tool", request.name)
    result = await dispatcher.dispatch(request.name, request.arguments, resolve_config(defaults, request.config))
    return ToolResultResponse(tool=request.name, result=result)


@router.post("/batch", response_model=ToolBatchResponse, operation_id="call_tools_batch")
async def call_tools_batch(
    request: ToolBatchRequest,
    dispatcher: RetrievalToolDispatcher = Depends(get_dispatcher),
    defaults: IndexConfig = Depends(get_index_config),
) -> ToolBatchResponse:
    """Run several tools concurrently; each entry holds either a result or an error."""
    config = resolve_config(defaults, request.config)
    results = await dispatcher.dispatch_many([(call.name, call.arguments) for call in request.calls], config)
    logger.info(
        "Dispatched tool batch",
        calls=len(results),
        failed=sum(1 for result in results if "error" in result),
    )
    return ToolBatchResponse(results=results)
