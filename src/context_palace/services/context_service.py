"""Request-path orchestration: storing entities and preparing the context index."""

import asyncio
from typing import Any, cast

from context_palace.core.base import ApplicationError, ErrorLevel, ValidationErrorDetails
from context_palace.core.config import IndexConfig
from context_palace.core.decorators import error_context, with_error_handling
from context_palace.core.errors import InvalidArgumentError, NotFoundError, UpstreamTimeoutError
from context_palace.core.logging import get_logger, update_log_context
from context_palace.domain.models import (
    ContextIndex,
    Entity,
    IndexItem,
    IndexStrategy,
    Message,
    MessageRole,
    ToolCall,
)
from context_palace.infrastructure.repositories import EntityRepository, build_chunk_set

from .chunker import ContentChunker
from .embedding_gateway import EmbeddingGateway, embedding_input
from .index_builder import IndexBuilder, select_strategy
from .snippets import make_snippet
from .versioning import VersioningManager

logger = get_logger(__name__)


class ContextService:
    """Stores messages and tool calls and assembles the adaptive context index."""

    def __init__(
        self,
        repository: EntityRepository,
        gateway: EmbeddingGateway,
        chunker: ContentChunker,
        index_builder: IndexBuilder,
        versioning: VersioningManager | None = None,
        search_timeout: float = 5.0,
        index_build_timeout: float = 10.0,
    ):
        self.repository = repository
        self.gateway = gateway
        self.chunker = chunker
        self.index_builder = index_builder
        self.versioning = versioning or VersioningManager(repository, chunker, gateway)
        self.search_timeout = search_timeout
        self.index_build_timeout = index_build_timeout

    # Store

    async def _persist(self, entity: Entity, full_content: str, config: IndexConfig) -> Entity:
        segments = self.chunker.split(full_content, config.chunk_threshold)
        # Every chunk is embedded before any of them is written
        embeddings = await self.gateway.embed([embedding_input(entity, segment) for segment in segments])
        token_counts = self.chunker.counter.count_many(segments)

        if len(segments) > 1:
            nodes = build_chunk_set(entity, segments, embeddings, token_counts, config.chunk_overlap_tokens)
        else:
            nodes = [entity.model_copy(update={"embedding": embeddings[0], "token_count": token_counts[0]})]
        return await self.repository.create(nodes)

    @with_error_handling(error_level=ErrorLevel.ERROR, reraise=True)
    async def store_message(
        self,
        content: str,
        role: MessageRole | str,
        config: IndexConfig,
        parent_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        """Store a message, chunking it when it exceeds ``config.chunk_threshold``.

        Args:
            content: Message text
            role: user, assistant or system
            config: Index configuration for this call
            parent_id: Message this one replies to; must exist
            metadata: Extra properties kept on the logical message

        Returns:
            The logical message (chunk 0 when chunked)
        """
        if not content.strip():
            raise InvalidArgumentError(
                message="Message content must not be empty",
                details=ValidationErrorDetails(source="context_service", operation="store_message", field="content"),
            )
        try:
            message_role = MessageRole(role)
        except ValueError as e:
            raise InvalidArgumentError(
                message=f"Unknown role '{role}'",
                details=ValidationErrorDetails(
                    source="context_service",
                    operation="store_message",
                    field="role",
                    actual_value=role,
                    constraint="one of user, assistant, system",
                ),
            ) from e
        if parent_id is not None:
            await self._require_message(parent_id, "parent_id", "store_message")

        message = Message(
            content=content,
            role=message_role,
            parent_id=parent_id,
            metadata=metadata or {},
            snippet=make_snippet(content, config.snippet_length, config.snippet_strategy),
        )
        update_log_context("entity_id", message.id)
        stored = await self._persist(message, content, config)
        logger.info(f"Stored {message.role.value} message {stored.id}", chunked=stored.is_chunk)
        return cast("Message", stored)

    @with_error_handling(error_level=ErrorLevel.ERROR, reraise=True)
    async def store_tool_call(
        self,
        tool_name: str,
        config: IndexConfig,
        arguments: str = "",
        result: str = "",
        message_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ToolCall:
        """Store a tool call with its serialized arguments and result."""
        if not tool_name.strip():
            raise InvalidArgumentError(
                message="Tool name must not be empty",
                details=ValidationErrorDetails(source="context_service", operation="store_tool_call", field="tool_name"),
            )
        if message_id is not None:
            await self._require_message(message_id, "message_id", "store_tool_call")

        tool_call = ToolCall(
            tool_name=tool_name.strip(),
            arguments=arguments,
            content=result,
            message_id=message_id,
            metadata=metadata or {},
            snippet=make_snippet(result, config.snippet_length, config.snippet_strategy) if result else "",
        )
        update_log_context("entity_id", tool_call.id)
        stored = await self._persist(tool_call, result, config)
        logger.info(f"Stored tool call {stored.id}", tool_name=tool_name, chunked=stored.is_chunk)
        return cast("ToolCall", stored)

    async def _require_message(self, entity_id: str, field: str, operation: str) -> Message:
        try:
            entity = await self.repository.get_by_id(entity_id)
        except NotFoundError as e:
            raise InvalidArgumentError(
                message=f"{field} '{entity_id}' does not reference a stored message",
                details=ValidationErrorDetails(
                    source="context_service", operation=operation, field=field, actual_value=entity_id
                ),
            ) from e
        if not isinstance(entity, Message):
            raise InvalidArgumentError(
                message=f"{field} '{entity_id}' is not a message",
                details=ValidationErrorDetails(
                    source="context_service", operation=operation, field=field, actual_value=entity_id
                ),
            )
        return entity

    # Edit / delete

    async def edit_message(self, entity_id: str, content: str, config: IndexConfig) -> Message:
        return await self.versioning.edit(entity_id, content, config)

    @with_error_handling(error_level=ErrorLevel.ERROR, reraise=True)
    async def delete_entity(self, entity_id: str) -> list[str]:
        return await self.repository.soft_delete(entity_id)

    # Context

    async def _search(self, query: str, config: IndexConfig) -> tuple[list[tuple[Entity, float]], str | None]:
        if not query.strip():
            return [], None

        async def run() -> list[tuple[Entity, float]]:
            embedding = await self.gateway.embed_query(query)
            return await self.repository.vector_search(
                embedding,
                config.search_limit,
                include_tool_calls=config.include_tool_calls,
                min_score=config.min_relevance,
            )

        try:
            return await asyncio.wait_for(run(), self.search_timeout), None
        except (TimeoutError, UpstreamTimeoutError):
            logger.warning("Search timed out, falling back to recent-only index", timeout=self.search_timeout)
            return [], "search_timeout"
        except ApplicationError as e:
            logger.warning(f"Search failed, falling back to recent-only index: {e.message}", error_code=e.code.value)
            return [], "search_failed"

    async def _items(self, entities: list[Entity], scores: dict[str, float] | None = None) -> list[IndexItem]:
        contents = await self.repository.full_contents(entities)
        return [
            IndexItem.from_entity(
                entity,
                score=(scores or {}).get(entity.id, 0.0),
                content=contents[entity.id],
                chunk_count=int(entity.metadata.get("chunk_count", 0)) if entity.is_chunk else 0,
            )
            for entity in entities
        ]

    @error_context(error_level=ErrorLevel.ERROR)
    async def prepare_context(self, query: str, config: IndexConfig) -> ContextIndex:
        """Build the adaptive index for ``query``.

        Search and the recency query run concurrently. A slow or failing
        search degrades to a recent-only index; a slow build degrades to the
        Full recent-only representation.
        """
        recent_entities, (hits, fallback_reason) = await asyncio.gather(
            self.repository.recent(config.recent_window_size, config.include_tool_calls),
            self._search(query, config),
        )
        recent = await self._items(recent_entities)

        scores = {entity.id: score for entity, score in hits}
        strategy = select_strategy(len(scores), config.index_strategy)
        if strategy is IndexStrategy.FULL:
            matches = await self._items([entity for entity, _ in hits], scores)
        else:
            # Snippet and coarser tiers never render full content
            matches = [IndexItem.from_entity(entity, score=score) for entity, score in hits]

        try:
            index = await asyncio.wait_for(
                asyncio.to_thread(self.index_builder.build, matches, recent, config, None, fallback_reason),
                self.index_build_timeout,
            )
        except TimeoutError:
            logger.warning(
                "Index build timed out, using recent-only index",
                timeout=self.index_build_timeout,
                match_count=len(matches),
            )
            index = self.index_builder.build_recent_only(recent, config, "index_build_timeout")
        return index
