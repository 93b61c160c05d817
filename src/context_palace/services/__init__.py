"""Service layer interfaces and implementations."""

from collections.abc import Mapping, Sequence
from types import MappingProxyType
from typing import Any, NamedTuple, Protocol, runtime_checkable

from context_palace.domain.models import GraphModel


class Relationship(NamedTuple):
    """A directed edge to merge alongside a node write."""

    source_id: str
    type: str
    target_id: str
    target_label: str = "Entity"
    properties: Mapping[str, Any] = MappingProxyType({})


@runtime_checkable
class EmbeddingService(Protocol):
    """Protocol for embedding services."""

    async def embed_text(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts."""
        ...

    def get_model_dimensions(self) -> int:
        """Get the dimensions of the embedding model."""
        ...


@runtime_checkable
class GraphStore(Protocol):
    """Node/relationship storage with property lookup and vector search.

    Filters use the ``compile_filters`` dialect: ``{"field": value}``,
    ``{"field__gte": value}``, ``{"field": None}`` for missing properties and
    ``{"$or": [...]}`` groups. Node properties are the flat maps produced by
    ``GraphModel.to_neo4j_properties``.
    """

    async def write(
        self,
        nodes: Sequence[GraphModel],
        relationships: Sequence[Relationship] = (),
        delete_ids: Sequence[str] = (),
    ) -> None:
        """Delete ``delete_ids``, upsert ``nodes`` and merge ``relationships`` atomically."""
        ...

    async def get_node(self, node_id: str, label: str = "Entity") -> dict[str, Any] | None: ...

    async def find_nodes(
        self,
        label: str = "Entity",
        filters: dict[str, Any] | None = None,
        order_by: str = "timestamp",
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    async def vector_query(
        self,
        embedding: list[float],
        k: int,
        filters: dict[str, Any] | None = None,
        min_score: float = 0.0,
    ) -> list[tuple[dict[str, Any], float]]:
        """Nearest ``Entity`` nodes with their cosine similarity in [-1, 1], best first."""
        ...

    async def update_nodes(self, ids: Sequence[str], properties: dict[str, Any]) -> int: ...

    async def delete_nodes(self, ids: Sequence[str]) -> int:
        """Hard delete; used by orphan cleanup, topic rebuilds and failed-write compensation."""
        ...

    async def orphan_chunk_ids(self) -> list[str]:
        """Continuation chunks and chunk groups whose chunk 0 is gone."""
        ...


__all__ = ["EmbeddingService", "GraphStore", "Relationship"]
