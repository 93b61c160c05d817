"""Context preparation endpoint."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from context_palace.api.dependencies import get_context_service, get_index_config, resolve_config
from context_palace.core.config import IndexConfig
from context_palace.core.decorators import with_error_handling
from context_palace.core.logging import get_logger, update_log_context
from context_palace.domain.models import ContextIndex
from context_palace.services.context_service import ContextService

logger = get_logger(__name__)
router = APIRouter()


class PrepareContextRequest(BaseModel):
    """The latest user turn plus optional index overrides."""

    query: str = Field("", description="Text the index should be relevant to, usually the latest user message")
    config: IndexConfig | None = Field(None, description="Per-request overrides of the index configuration")


@router.post("/context", response_model=ContextIndex, operation_id="prepare_context")
@with_error_handling(reraise=True)
async def prepare_context(
    request: PrepareContextRequest,
    service: ContextService = Depends(get_context_service),
    defaults: IndexConfig = Depends(get_index_config),
) -> ContextIndex:
    """Build the adaptive context index handed to the model instead of the transcript."""
    update_log_context("operation", "prepare_context")
    index = await service.prepare_context(request.query, resolve_config(defaults, request.config))
    logger.info(
        "Prepared context",
        strategy=index.strategy.value,
        match_count=index.match_count,
        token_count=index.token_count,
    )
    return index
