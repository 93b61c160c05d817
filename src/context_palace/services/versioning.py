"""Message edits: edit-history append, re-embedding and chunk-set replacement."""

from typing import cast

from context_palace.core.base import ErrorLevel, ResourceErrorDetails
from context_palace.core.config import IndexConfig
from context_palace.core.decorators import with_error_handling
from context_palace.core.errors import ConflictError, InvalidArgumentError, NotFoundError
from context_palace.core.logging import get_logger
from context_palace.domain.models import Entity, Message
from context_palace.infrastructure.repositories import EntityRepository, build_chunk_set

from .chunker import ContentChunker
from .embedding_gateway import EmbeddingGateway, embedding_input
from .snippets import make_snippet

logger = get_logger(__name__)


class VersioningManager:
    """Applies edits to logical messages.

    ``unedited -> edited`` is one-way. Once a message is chunked it stays
    chunked: every later edit deletes the old chunk set and writes a fresh
    one, even when the new content would fit in a single node. Only the
    logical id (an unchunked message or chunk 0) accepts edits; continuation
    chunks are rejected with ``ConflictError`` before anything is written.
    """

    def __init__(self, repository: EntityRepository, chunker: ContentChunker, gateway: EmbeddingGateway):
        self.repository = repository
        self.chunker = chunker
        self.gateway = gateway

    def _check_editable(self, entity_id: str, entity: Entity | None) -> Message:
        if entity is None or entity.deleted:
            raise NotFoundError.for_id(entity_id, resource_type="message", action="edit")
        if entity.is_continuation:
            raise ConflictError(
                message=f"'{entity_id}' is chunk {entity.chunk_index} of a larger message; edit the logical id instead",
                details=ResourceErrorDetails(
                    source="versioning",
                    operation="edit",
                    resource_id=entity_id,
                    resource_type="chunk",
                    action="edit",
                    chunk_parent_id=entity.chunk_parent_id,
                ),
            )
        if not isinstance(entity, Message):
            raise InvalidArgumentError(
                message=f"'{entity_id}' is a {entity.kind.value}; only messages can be edited",
                details={"source": "versioning", "operation": "edit", "field": "id", "actual_value": entity_id},
            )
        return entity

    @with_error_handling(error_level=ErrorLevel.ERROR, reraise=True)
    async def edit(self, entity_id: str, content: str, config: IndexConfig) -> Message:
        """Replace a message's content, returning the new logical message."""
        if not content.strip():
            raise InvalidArgumentError(
                message="Edited content must not be empty",
                details={"source": "versioning", "operation": "edit", "field": "content"},
            )

        # Fail fast before spending embedding calls; re-checked under the lock.
        target = self._check_editable(entity_id, await self.repository.get_node(entity_id))

        segments = self.chunker.split(content, config.chunk_threshold)
        snippet = make_snippet(content, config.snippet_length, config.snippet_strategy)
        draft = target.model_copy(update={"content": content, "snippet": snippet})
        embeddings = await self.gateway.embed([embedding_input(draft, segment) for segment in segments])
        token_counts = self.chunker.counter.count_many(segments)

        async with self.repository.lock(entity_id):
            current = self._check_editable(entity_id, await self.repository.get_node(entity_id))
            previous = [current]
            if current.is_chunk and current.chunk_parent_id:
                previous = await self.repository.get_chunks(current.chunk_parent_id)

            edited = current.with_edit(content, "".join(chunk.content for chunk in previous))
            edited = edited.model_copy(update={"snippet": snippet})

            if current.is_chunk or len(segments) > 1:
                nodes = build_chunk_set(edited, segments, embeddings, token_counts, config.chunk_overlap_tokens)
            else:
                edited = edited.model_copy(update={"embedding": embeddings[0], "token_count": token_counts[0]})
                nodes = [edited]

            stale_ids = [chunk.id for chunk in previous if chunk.id != entity_id]
            if current.is_chunk and current.chunk_parent_id:
                stale_ids.append(current.chunk_parent_id)

            await self.repository.replace(nodes, stale_ids)

        head = cast("Message", nodes[0])
        logger.info(
            f"Edited message {entity_id}",
            versions=len(head.edit_history),
            chunked=head.is_chunk,
            chunk_count=len(nodes) if head.is_chunk else 0,
        )
        return head
