"""Models describing a built context index and the items it is built from."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from .base import EntityKind
from .entities import Entity, Message, ToolCall


class IndexStrategy(str, Enum):
    """Presentation tiers, selected by match count."""

    FULL = "full"
    SNIPPET = "snippet"
    CLUSTERED = "clustered"
    HIERARCHICAL = "hierarchical"


class IndexItem(BaseModel):
    """A logical entity as seen by the index builder.

    ``content`` is always the full assembled content, also for chunked
    entities; ``score`` is the best chunk score for search matches and 0 for
    recency-only items.
    """

    id: str
    kind: EntityKind
    timestamp: datetime
    content: str
    snippet: str = ""
    score: float = 0.0
    embedding: list[float] | None = None
    role: str | None = None
    tool_name: str | None = None
    chunk_count: int = 0

    @classmethod
    def from_entity(
        cls,
        entity: Entity,
        score: float = 0.0,
        content: str | None = None,
        chunk_count: int = 0,
    ) -> "IndexItem":
        return cls(
            id=entity.id,
            kind=entity.kind,
            timestamp=entity.timestamp,
            content=entity.content if content is None else content,
            snippet=entity.snippet,
            score=score,
            embedding=entity.embedding,
            role=entity.role.value if isinstance(entity, Message) else None,
            tool_name=entity.tool_name if isinstance(entity, ToolCall) else None,
            chunk_count=chunk_count,
        )

    @property
    def label(self) -> str:
        if self.kind is EntityKind.TOOL_CALL:
            return f"tool:{self.tool_name}"
        return self.role or self.kind.value


class IndexEntry(BaseModel):
    """A historical entry rendered into the index (verbatim or as a snippet)."""

    id: str
    kind: EntityKind
    timestamp: datetime
    text: str
    score: float


class ClusterSummary(BaseModel):
    """A group of similar matches rendered as one entry."""

    cluster_id: str
    summary: str
    start: datetime
    end: datetime
    count: int
    samples: list[str] = Field(default_factory=list)
    score: float = 0.0
    member_ids: list[str] = Field(default_factory=list, exclude=True)


class PeriodRollup(BaseModel):
    """Match counts for one time bucket of the hierarchical index."""

    period: str
    label: str
    count: int
    start: datetime | None = None
    end: datetime | None = None


class ContextIndex(BaseModel):
    """The bounded artifact handed to the language model in place of the transcript."""

    strategy: IndexStrategy
    match_count: int
    token_count: int
    max_tokens: int
    text: str
    recent_ids: list[str] = Field(default_factory=list)
    entries: list[IndexEntry] = Field(default_factory=list)
    clusters: list[ClusterSummary] = Field(default_factory=list)
    periods: list[PeriodRollup] = Field(default_factory=list)
    topics: list[ClusterSummary] = Field(default_factory=list)
    hints: list[str] = Field(default_factory=list)
    fallback_reason: str | None = None

    @property
    def historical_count(self) -> int:
        return len(self.entries) + len(self.clusters)
