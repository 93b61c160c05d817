import asyncio
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime
from typing import Any, TypeVar
from weakref import WeakValueDictionary

from context_palace.core.base import DatabaseErrorDetails, ErrorLevel
from context_palace.core.circuit_breaker import CircuitBreaker, RetryWithCircuitBreaker
from context_palace.core.decorators import with_error_handling
from context_palace.core.errors import (
    NotFoundError,
    PartialChunkFailureError,
    ProcessingError,
    ServiceError,
    StorageError,
    UpstreamTimeoutError,
)
from context_palace.core.logging import get_logger
from context_palace.domain.models import (
    Entity,
    EntityKind,
    Message,
    ToolCall,
    Topic,
    entity_from_record,
)
from context_palace.domain.models.utils import new_id
from context_palace.services import GraphStore, Relationship

logger = get_logger(__name__)

T = TypeVar("T")


def entity_filters(
    kinds: Sequence[EntityKind] | None = None,
    logical_only: bool = True,
    include_deleted: bool = False,
    **extra: Any,
) -> dict[str, Any]:
    """Standard entity filter: live, addressable (chunk 0 or unchunked) nodes."""
    clauses: list[dict[str, Any]] = []
    if not include_deleted:
        clauses.append({"deleted": False})
    if logical_only:
        clauses.append({"$or": [{"is_chunk": False}, {"chunk_index": 0}]})
    if kinds:
        clauses.append({"kind__in": [kind.value for kind in kinds]})
    if extra:
        clauses.append(extra)
    return {"$and": clauses} if clauses else {}


def build_chunk_set(
    head: Entity,
    segments: list[str],
    embeddings: list[list[float]],
    token_counts: list[int],
    overlap_tokens: int = 0,
) -> list[Entity]:
    """Expand ``head`` into ``len(segments)`` chunk nodes under a fresh group id.

    Chunk 0 keeps ``head.id``, its snippet and its edit history; later chunks
    get new ids, empty snippets and no history. All chunks share the role,
    timestamp and parent linkage of ``head``.
    """
    if not segments or not (len(segments) == len(embeddings) == len(token_counts)):
        raise ProcessingError(
            message="Chunk segments, embeddings and token counts must align",
            details={
                "source": "entity_repository",
                "operation": "build_chunk_set",
                "segments": len(segments),
                "embeddings": len(embeddings),
                "token_counts": len(token_counts),
            },
        )

    group_id = new_id()
    metadata = {**head.metadata, "chunk_count": len(segments)}
    if overlap_tokens:
        metadata["chunk_overlap_tokens"] = overlap_tokens

    nodes: list[Entity] = []
    for index, (segment, embedding, tokens) in enumerate(zip(segments, embeddings, token_counts, strict=True)):
        update: dict[str, Any] = {
            "content": segment,
            "embedding": embedding,
            "token_count": tokens,
            "is_chunk": True,
            "chunk_index": index,
            "chunk_parent_id": group_id,
            "metadata": metadata,
        }
        if index > 0:
            update["id"] = new_id()
            update["snippet"] = ""
            if isinstance(head, Message):
                update["edit_history"] = []
        nodes.append(head.model_copy(update=update))
    return nodes


class EntityRepository:
    """Persists messages, tool calls, chunk sets and topics through a ``GraphStore``.

    Writes go through a retry policy with a circuit breaker; once retries are
    exhausted the failure surfaces as ``StorageError``. Chunk sets are written
    in one store call and a failed creation is compensated so the logical id
    never resolves to a partial set.
    """

    def __init__(self, store: GraphStore, max_retries: int = 3, retry_delay: float = 0.5):
        self.store = store
        self._retry = RetryWithCircuitBreaker(
            circuit_breaker=CircuitBreaker(
                name="graph_store",
                failure_threshold=5,
                recovery_timeout=30.0,
                expected_exception_types=(ServiceError, UpstreamTimeoutError),
            ),
            max_retries=max_retries,
            initial_delay=retry_delay,
            max_delay=5.0,
            retryable_exceptions=(ServiceError, UpstreamTimeoutError),
        )
        self._locks: WeakValueDictionary[str, asyncio.Lock] = WeakValueDictionary()

    def lock(self, logical_id: str) -> asyncio.Lock:
        """Per-logical-id lock serializing chunk-set writes and with-chunks reads."""
        lock = self._locks.get(logical_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[logical_id] = lock
        return lock

    async def _call(
        self,
        operation: str,
        logical_id: str | None,
        func: Callable[..., Awaitable[T]],
        *args: Any,
    ) -> T:
        try:
            return await self._retry.call_async(func, *args)
        except (ServiceError, UpstreamTimeoutError) as e:
            raise StorageError(
                message=f"Storage {operation} failed after retries: {e.message}",
                details=DatabaseErrorDetails(
                    source="entity_repository",
                    operation=operation,
                    service_name="graph_store",
                    logical_id=logical_id,
                ),
            ) from e

    def _to_entity(self, record: dict[str, Any]) -> Entity:
        try:
            return entity_from_record(record)
        except Exception as e:
            logger.error("Failed to convert record to entity", record_id=record.get("id"), exc_info=True)
            raise ProcessingError(
                message=f"Failed to deserialize entity from store record: {e}",
                details={
                    "source": "entity_repository",
                    "operation": "_to_entity",
                    "field": "record",
                    "actual_value": str(record)[:200],
                },
            ) from e

    # Writes

    @staticmethod
    def _linkage(nodes: Sequence[Entity]) -> list[Relationship]:
        head = nodes[0]
        relationships: list[Relationship] = []
        if isinstance(head, Message) and head.parent_id:
            relationships.append(Relationship(head.id, "REPLIES_TO", head.parent_id))
        if isinstance(head, ToolCall) and head.message_id:
            relationships.append(Relationship(head.id, "CALLED_BY", head.message_id))
        for chunk in nodes[1:]:
            relationships.append(
                Relationship(
                    chunk.id,
                    "CHUNK_OF",
                    chunk.chunk_parent_id or "",
                    "ChunkGroup",
                    {"chunk_index": chunk.chunk_index},
                )
            )
        return relationships

    @staticmethod
    def _validate_chunk_set(nodes: Sequence[Entity]) -> None:
        head = nodes[0]
        if len(nodes) == 1 and not head.is_chunk:
            return
        group_id = head.chunk_parent_id
        node_ids = {node.id for node in nodes}
        valid = (
            group_id is not None
            and group_id not in node_ids
            and all(node.chunk_parent_id == group_id for node in nodes)
            and [node.chunk_index for node in nodes] == list(range(len(nodes)))
            and all(node.is_chunk for node in nodes)
        )
        if not valid:
            raise ProcessingError(
                message="Malformed chunk set",
                details={"source": "entity_repository", "operation": "validate_chunk_set", "logical_id": head.id},
            )

    @with_error_handling(error_level=ErrorLevel.ERROR, reraise=True)
    async def create(self, nodes: Sequence[Entity]) -> Entity:
        """Persist an entity, or a chunk set given in chunk-index order.

        Raises:
            PartialChunkFailureError: A chunk set could not be fully written
            StorageError: A single entity could not be written
        """
        head = nodes[0]
        self._validate_chunk_set(nodes)
        async with self.lock(head.id):
            try:
                await self._call("create", head.id, self.store.write, list(nodes), self._linkage(nodes))
            except StorageError as e:
                if len(nodes) == 1:
                    raise
                await self._discard([*(node.id for node in nodes), head.chunk_parent_id or ""], head.id)
                raise PartialChunkFailureError(
                    message=f"Chunk set for {head.id} was not persisted: {e.message}",
                    details=DatabaseErrorDetails(
                        source="entity_repository",
                        operation="create",
                        service_name="graph_store",
                        logical_id=head.id,
                        chunk_count=len(nodes),
                    ),
                ) from e

        logger.info(
            f"Stored {head.kind.value} {head.id}",
            chunked=head.is_chunk,
            chunk_count=len(nodes) if head.is_chunk else 0,
        )
        return head

    async def replace(self, nodes: Sequence[Entity], stale_ids: Sequence[str]) -> Entity:
        """Swap a logical entity's node set for ``nodes`` in one store write.

        The caller must hold ``lock(nodes[0].id)``.
        """
        head = nodes[0]
        self._validate_chunk_set(nodes)
        try:
            await self._call("replace", head.id, self.store.write, list(nodes), self._linkage(nodes), list(stale_ids))
        except StorageError as e:
            if len(nodes) == 1:
                raise
            raise PartialChunkFailureError(
                message=f"Replacement chunk set for {head.id} was not persisted: {e.message}",
                details=DatabaseErrorDetails(
                    source="entity_repository",
                    operation="replace",
                    service_name="graph_store",
                    logical_id=head.id,
                    chunk_count=len(nodes),
                ),
            ) from e
        logger.info(f"Replaced node set of {head.id}", chunk_count=len(nodes), stale=len(stale_ids))
        return head

    async def _discard(self, ids: list[str], logical_id: str) -> None:
        # Compensation after a failed chunk-set write; the write error is what
        # the caller sees, so a cleanup failure is only logged.
        try:
            deleted = await self.store.delete_nodes([i for i in ids if i])
            logger.warning(f"Discarded {deleted} nodes of failed chunk set", logical_id=logical_id)
        except Exception:
            logger.error("Cleanup of failed chunk set did not complete", logical_id=logical_id, exc_info=True)

    @with_error_handling(error_level=ErrorLevel.ERROR, reraise=True)
    async def connect(
        self,
        source_id: str,
        relationship_type: str,
        target_id: str,
        target_label: str = "Entity",
        properties: dict[str, Any] | None = None,
    ) -> None:
        relationship = Relationship(source_id, relationship_type, target_id, target_label, dict(properties or {}))
        await self._call("connect", source_id, self.store.write, [], [relationship])
        logger.debug(f"Created {relationship_type} relationship: {source_id} -> {target_id}")

    @with_error_handling(error_level=ErrorLevel.ERROR, reraise=True)
    async def soft_delete(self, entity_id: str) -> list[str]:
        """Mark an entity and all of its chunks deleted; returns the affected ids."""
        async with self.lock(entity_id):
            head = await self.get_by_id(entity_id)
            ids = [head.id]
            if head.is_chunk and head.chunk_parent_id:
                ids = [chunk.id for chunk in await self.get_chunks(head.chunk_parent_id)]
            await self._call("soft_delete", entity_id, self.store.update_nodes, ids, {"deleted": True})
        logger.info(f"Soft-deleted {head.kind.value} {entity_id}", nodes=len(ids))
        return ids

    async def set_embedding(self, entity_id: str, embedding: list[float]) -> None:
        await self._call("set_embedding", entity_id, self.store.update_nodes, [entity_id], {"embedding": embedding})

    async def save_topic(self, topic: Topic) -> Topic:
        relationships = [Relationship(member_id, "BELONGS_TO", topic.id, "Topic") for member_id in topic.member_ids]
        await self._call("save_topic", topic.id, self.store.write, [topic], relationships)
        return topic

    async def prune_topics(self, keep_ids: Sequence[str]) -> int:
        """Hard-delete topics not in ``keep_ids``; their BELONGS_TO edges go with them."""
        keep = set(keep_ids)
        records = await self._call("topic_scan", None, self.store.find_nodes, "Topic", None, "id")
        stale_ids = [record["id"] for record in records if record["id"] not in keep]
        if not stale_ids:
            return 0
        return await self._call("topic_prune", None, self.store.delete_nodes, stale_ids)

    async def cleanup_orphan_chunks(self) -> int:
        orphan_ids = await self._call("orphan_scan", None, self.store.orphan_chunk_ids)
        if not orphan_ids:
            return 0
        return await self._call("orphan_cleanup", None, self.store.delete_nodes, orphan_ids)

    # Reads

    async def get_node(self, entity_id: str) -> Entity | None:
        """Raw node read: includes deleted entities and continuation chunks."""
        record = await self._call("get_node", entity_id, self.store.get_node, entity_id)
        return self._to_entity(record) if record else None

    async def get_by_id(self, entity_id: str) -> Entity:
        """Addressable entity by logical id.

        Raises:
            NotFoundError: Unknown, soft-deleted, continuation chunk or chunk group id
        """
        entity = await self.get_node(entity_id)
        if entity is None or entity.deleted or entity.is_continuation:
            raise NotFoundError.for_id(entity_id)
        return entity

    async def get_many(self, entity_ids: Sequence[str]) -> list[Entity]:
        """Addressable entities in request order; missing ids are omitted."""
        if not entity_ids:
            return []
        records = await self._call(
            "get_many",
            None,
            self.store.find_nodes,
            "Entity",
            entity_filters(id__in=list(dict.fromkeys(entity_ids))),
        )
        by_id = {entity.id: entity for entity in map(self._to_entity, records)}
        return [by_id[entity_id] for entity_id in dict.fromkeys(entity_ids) if entity_id in by_id]

    async def get_chunks(self, group_id: str) -> list[Entity]:
        records = await self._call(
            "get_chunks",
            group_id,
            self.store.find_nodes,
            "Entity",
            entity_filters(logical_only=False, chunk_parent_id=group_id),
            "chunk_index",
        )
        return [self._to_entity(record) for record in records]

    async def get_with_chunks(self, entity_id: str) -> list[Entity]:
        """The entity and, when chunked, all of its chunks ordered by chunk index.

        Serialized with edits of the same id, so the result is either the
        complete old set or the complete new set.
        """
        async with self.lock(entity_id):
            head = await self.get_by_id(entity_id)
            if not head.is_chunk or head.chunk_parent_id is None:
                return [head]
            chunks = await self.get_chunks(head.chunk_parent_id)

        if not chunks or chunks[0].id != head.id or [c.chunk_index for c in chunks] != list(range(len(chunks))):
            raise StorageError(
                message=f"Inconsistent chunk set for {entity_id}",
                details=DatabaseErrorDetails(
                    source="entity_repository",
                    operation="get_with_chunks",
                    service_name="graph_store",
                    logical_id=entity_id,
                ),
            )
        return chunks

    async def full_contents(self, entities: Sequence[Entity]) -> dict[str, str]:
        """Assembled content per logical id (chunk contents joined in order)."""
        contents = {entity.id: entity.content for entity in entities}
        groups = {entity.chunk_parent_id: entity.id for entity in entities if entity.is_chunk and entity.chunk_parent_id}
        if not groups:
            return contents

        records = await self._call(
            "full_contents",
            None,
            self.store.find_nodes,
            "Entity",
            entity_filters(logical_only=False, chunk_parent_id__in=list(groups)),
            "chunk_index",
        )
        parts: dict[str, list[str]] = {}
        for chunk in map(self._to_entity, records):
            parts.setdefault(groups[chunk.chunk_parent_id or ""], []).append(chunk.content)
        for logical_id, pieces in parts.items():
            contents[logical_id] = "".join(pieces)
        return contents

    @with_error_handling(error_level=ErrorLevel.WARNING, reraise=True)
    async def vector_search(
        self,
        embedding: list[float],
        limit: int,
        include_tool_calls: bool = True,
        min_score: float = 0.0,
    ) -> list[tuple[Entity, float]]:
        """Nearest live entities, collapsed to logical ids with their best chunk score."""
        kinds = None if include_tool_calls else [EntityKind.MESSAGE]
        hits = await self._call(
            "vector_search",
            None,
            self.store.vector_query,
            embedding,
            limit,
            entity_filters(kinds=kinds, logical_only=False),
            min_score,
        )
        return await self._collapse(hits)

    async def _collapse(self, hits: list[tuple[dict[str, Any], float]]) -> list[tuple[Entity, float]]:
        best: dict[str, tuple[Entity, float]] = {}
        continuation_scores: dict[str, float] = {}

        def keep(entity: Entity, score: float) -> None:
            current = best.get(entity.id)
            if current is None or score > current[1]:
                best[entity.id] = (entity, score)

        for record, score in hits:
            entity = self._to_entity(record)
            if entity.is_continuation and entity.chunk_parent_id:
                group = entity.chunk_parent_id
                continuation_scores[group] = max(score, continuation_scores.get(group, score))
            else:
                keep(entity, score)

        if continuation_scores:
            records = await self._call(
                "resolve_chunk_heads",
                None,
                self.store.find_nodes,
                "Entity",
                entity_filters(chunk_parent_id__in=list(continuation_scores), chunk_index=0),
            )
            for head in map(self._to_entity, records):
                keep(head, continuation_scores[head.chunk_parent_id or ""])

        return sorted(best.values(), key=lambda pair: (-pair[1], pair[0].id))

    async def recent(self, limit: int, include_tool_calls: bool = True) -> list[Entity]:
        """The ``limit`` most recent live top-level entities, newest first."""
        if limit <= 0:
            return []
        kinds = None if include_tool_calls else [EntityKind.MESSAGE]
        records = await self._call(
            "recent",
            None,
            self.store.find_nodes,
            "Entity",
            entity_filters(kinds=kinds),
            "timestamp",
            True,
            limit,
        )
        return [self._to_entity(record) for record in records]

    async def in_period(
        self,
        start: datetime | None,
        end: datetime | None,
        limit: int,
        kinds: Sequence[EntityKind] = (EntityKind.MESSAGE,),
    ) -> list[Entity]:
        """Live top-level entities with ``start <= timestamp < end``, oldest first."""
        bounds: dict[str, Any] = {}
        if start is not None:
            bounds["timestamp__gte"] = start.timestamp()
        if end is not None:
            bounds["timestamp__lt"] = end.timestamp()
        records = await self._call(
            "in_period",
            None,
            self.store.find_nodes,
            "Entity",
            entity_filters(kinds=kinds, **bounds),
            "timestamp",
            False,
            limit,
        )
        return [self._to_entity(record) for record in records]

    async def replies_to(self, message_id: str) -> list[Message]:
        records = await self._call(
            "replies_to",
            message_id,
            self.store.find_nodes,
            "Entity",
            entity_filters(kinds=[EntityKind.MESSAGE], parent_id=message_id),
        )
        return [entity for entity in map(self._to_entity, records) if isinstance(entity, Message)]

    async def tool_calls_for_message(self, message_id: str) -> list[ToolCall]:
        records = await self._call(
            "tool_calls_for_message",
            message_id,
            self.store.find_nodes,
            "Entity",
            entity_filters(kinds=[EntityKind.TOOL_CALL], message_id=message_id),
        )
        return [entity for entity in map(self._to_entity, records) if isinstance(entity, ToolCall)]

    async def missing_embeddings(self, limit: int) -> list[Entity]:
        records = await self._call(
            "missing_embeddings",
            None,
            self.store.find_nodes,
            "Entity",
            entity_filters(logical_only=False, embedding=None),
            "timestamp",
            False,
            limit,
        )
        return [self._to_entity(record) for record in records]

    async def embedded_since(self, since: datetime, limit: int) -> list[Entity]:
        """Live top-level entities newer than ``since`` that carry an embedding."""
        records = await self._call(
            "embedded_since",
            None,
            self.store.find_nodes,
            "Entity",
            entity_filters(timestamp__gte=since.timestamp()),
            "timestamp",
            True,
            limit,
        )
        return [entity for entity in map(self._to_entity, records) if entity.embedding]

    async def get_topic(self, topic_id: str) -> Topic | None:
        record = await self._call("get_topic", topic_id, self.store.get_node, topic_id, "Topic")
        return Topic.from_neo4j_record(record) if record else None
