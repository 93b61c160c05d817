"""Retrieval tool surface served to the language model.

Every tool is a read-only projection over the repository and the index
builder's cluster registry. Arguments are validated with pydantic models;
validation failures surface as ``InvalidArgumentError`` with the offending
field, and single-id lookups of absent ids as ``NotFoundError``.
"""

import asyncio
import re
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime, timedelta
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, ValidationError, field_validator

from context_palace.core.base import ApplicationError, ErrorLevel, ValidationErrorDetails
from context_palace.core.config import IndexConfig
from context_palace.core.decorators import with_error_handling
from context_palace.core.errors import InvalidArgumentError, NotFoundError, UpstreamTimeoutError
from context_palace.core.logging import get_logger
from context_palace.domain.models import (
    ChunkedEntityResponse,
    ClusterResponse,
    Entity,
    EntityKind,
    EntityListResponse,
    Message,
    MessageResponse,
    PeriodResponse,
    SearchAndRetrieveResponse,
    SearchResponse,
    SearchResult,
    ThreadResponse,
    ToolCall,
    ToolCallResponse,
    entity_response,
)
from context_palace.domain.models.utils import utc_now
from context_palace.infrastructure.repositories import EntityRepository

from .embedding_gateway import EmbeddingGateway
from .index_builder import IndexBuilder
from .snippets import make_snippet

logger = get_logger(__name__)

MAX_LIMIT = 200
MAX_IDS = 100
MAX_DEPTH = 20
AUTO_LIMIT_RATIO = 0.8
AUTO_LIMIT_MAX = 10
FIXED_RETRIEVE_COUNT = 5
SEARCH_POOL = 50

PERIOD_TOKENS = ("today", "this_week", "this_month", "older")
_CUSTOM_RANGE = re.compile(r"^(\d{4}-\d{2}-\d{2})\.\.(\d{4}-\d{2}-\d{2})$")

EntityId = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=128)]
Limit = Annotated[int, Field(ge=1, le=MAX_LIMIT)]
Query = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=8000)]


class _ToolArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")


class GetByIdArgs(_ToolArgs):
    id: EntityId = Field(description="Logical id of a message or tool call")


class GetManyByIdsArgs(_ToolArgs):
    ids: list[EntityId] = Field(min_length=1, max_length=MAX_IDS, description="Logical ids; unknown ids are omitted")


class GetWithChunksArgs(_ToolArgs):
    id: EntityId = Field(description="Logical id of a possibly chunked entity")


class VectorSearchArgs(_ToolArgs):
    query: Query
    limit: Limit = 10


class GetClusterArgs(_ToolArgs):
    cluster_id: EntityId = Field(description="Topic handle shown in the context index")
    limit: Limit = 20


class GetPeriodMessagesArgs(_ToolArgs):
    period: str = Field(description="today, this_week, this_month, older, or YYYY-MM-DD..YYYY-MM-DD")
    limit: Limit = 50

    @field_validator("period")
    @classmethod
    def check_period(cls, value: str) -> str:
        value = value.strip()
        if value in PERIOD_TOKENS:
            return value
        match = _CUSTOM_RANGE.match(value)
        if not match:
            raise ValueError(f"period must be one of {', '.join(PERIOD_TOKENS)} or YYYY-MM-DD..YYYY-MM-DD")
        start, end = (date.fromisoformat(part) for part in match.groups())
        if end < start:
            raise ValueError("custom period end date is before its start date")
        return value


class GetConversationThreadArgs(_ToolArgs):
    id: EntityId
    depth: int = Field(default=3, ge=1, le=MAX_DEPTH)


class GetToolCallArgs(_ToolArgs):
    id: EntityId


class GetToolCallsByMessageArgs(_ToolArgs):
    message_id: EntityId


class SearchAndRetrieveArgs(_ToolArgs):
    query: Query
    auto_limit: bool = True


def period_range(period: str, now: datetime | None = None) -> tuple[datetime | None, datetime | None]:
    """Time range for a validated period token; named periods are rolling windows ending now."""
    now = now or utc_now()
    match = _CUSTOM_RANGE.match(period)
    if match:
        start, end = (date.fromisoformat(part) for part in match.groups())
        return (
            datetime(start.year, start.month, start.day, tzinfo=UTC),
            datetime(end.year, end.month, end.day, tzinfo=UTC) + timedelta(days=1),
        )
    if period == "today":
        return now.replace(hour=0, minute=0, second=0, microsecond=0), None
    if period == "this_week":
        return now - timedelta(days=7), None
    if period == "this_month":
        return now - timedelta(days=30), None
    return None, now - timedelta(days=30)


ToolHandler = Callable[[Any, IndexConfig], Awaitable[BaseModel]]


class RetrievalToolDispatcher:
    """Validates tool arguments and routes them to read-only handlers."""

    def __init__(
        self,
        repository: EntityRepository,
        gateway: EmbeddingGateway,
        index_builder: IndexBuilder,
        search_timeout: float = 5.0,
    ):
        self.repository = repository
        self.gateway = gateway
        self.index_builder = index_builder
        self.search_timeout = search_timeout
        self._tools: dict[str, tuple[type[_ToolArgs], ToolHandler, str]] = {
            "get_by_id": (GetByIdArgs, self.get_by_id, "Fetch one message or tool call by id."),
            "get_many_by_ids": (GetManyByIdsArgs, self.get_many_by_ids, "Fetch several entities by id."),
            "get_with_chunks": (
                GetWithChunksArgs,
                self.get_with_chunks,
                "Fetch an entity with all of its chunks, in order, plus the assembled content.",
            ),
            "vector_search": (VectorSearchArgs, self.vector_search, "Semantic search over the conversation history."),
            "get_cluster": (GetClusterArgs, self.get_cluster, "List the entities behind a topic handle."),
            "get_period_messages": (
                GetPeriodMessagesArgs,
                self.get_period_messages,
                "Messages from a time period, oldest first.",
            ),
            "get_conversation_thread": (
                GetConversationThreadArgs,
                self.get_conversation_thread,
                "The reply chain around a message, up to depth levels each way.",
            ),
            "get_tool_call": (GetToolCallArgs, self.get_tool_call, "Fetch one tool call by id."),
            "get_tool_calls_by_message": (
                GetToolCallsByMessageArgs,
                self.get_tool_calls_by_message,
                "Tool calls triggered by a message.",
            ),
            "search_and_retrieve": (
                SearchAndRetrieveArgs,
                self.search_and_retrieve,
                "Search, then return the full content of the strongest matches.",
            ),
        }

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Tool name, description and JSON schema of the arguments."""
        return [
            {"name": name, "description": description, "input_schema": args_model.model_json_schema()}
            for name, (args_model, _, description) in self._tools.items()
        ]

    def parse_arguments(self, name: str, arguments: dict[str, Any] | None) -> _ToolArgs:
        if name not in self._tools:
            raise InvalidArgumentError(
                message=f"Unknown tool '{name}'",
                details=ValidationErrorDetails(
                    source="dispatcher",
                    operation="dispatch",
                    field="name",
                    actual_value=name,
                    constraint=f"one of {', '.join(self._tools)}",
                ),
            )
        args_model = self._tools[name][0]
        try:
            return args_model.model_validate(arguments or {})
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first.get("loc", ())) or None
            raise InvalidArgumentError(
                message=f"Invalid arguments for {name}: {first.get('msg', 'invalid value')}",
                details=ValidationErrorDetails(
                    source="dispatcher",
                    operation=name,
                    field=field,
                    actual_value=first.get("input"),
                    constraint=first.get("type"),
                    error_count=e.error_count(),
                ),
            ) from e

    @with_error_handling(error_level=ErrorLevel.ERROR, reraise=True)
    async def dispatch(self, name: str, arguments: dict[str, Any] | None, config: IndexConfig) -> dict[str, Any]:
        args = self.parse_arguments(name, arguments)
        handler = self._tools[name][1]
        result = await handler(args, config)
        logger.debug(f"Dispatched tool {name}")
        return result.model_dump(mode="json")

    async def dispatch_many(self, calls: list[tuple[str, dict[str, Any] | None]], config: IndexConfig) -> list[dict[str, Any]]:
        """Run independent tool calls concurrently; results keep request order.

        Application errors are reported per call so one bad call does not
        fail its siblings.
        """

        async def run(name: str, arguments: dict[str, Any] | None) -> dict[str, Any]:
            try:
                return {"tool": name, "result": await self.dispatch(name, arguments, config)}
            except ApplicationError as e:
                return {"tool": name, "error": e.to_dict()}

        return list(await asyncio.gather(*(run(name, arguments) for name, arguments in calls)))

    # Handlers

    async def get_by_id(self, args: GetByIdArgs, config: IndexConfig) -> BaseModel:
        return entity_response(await self.repository.get_by_id(args.id))

    async def get_many_by_ids(self, args: GetManyByIdsArgs, config: IndexConfig) -> EntityListResponse:
        entities = await self.repository.get_many(args.ids)
        return EntityListResponse(items=[entity_response(entity) for entity in entities])

    async def get_with_chunks(self, args: GetWithChunksArgs, config: IndexConfig) -> ChunkedEntityResponse:
        chunks = await self.repository.get_with_chunks(args.id)
        return ChunkedEntityResponse(
            id=args.id,
            content="".join(chunk.content for chunk in chunks),
            chunk_count=len(chunks) if chunks[0].is_chunk else 0,
            chunks=[entity_response(chunk) for chunk in chunks],
        )

    def _search_result(self, entity: Entity, score: float, config: IndexConfig) -> SearchResult:
        snippet = entity.snippet or make_snippet(entity.content, config.snippet_length, config.snippet_strategy)
        return SearchResult(
            id=entity.id,
            snippet=snippet,
            timestamp=entity.timestamp,
            score=score,
            type="tool_call" if entity.kind is EntityKind.TOOL_CALL else "message",
            is_chunk=entity.is_chunk,
        )

    async def _search(self, query: str, limit: int, config: IndexConfig) -> list[tuple[Entity, float]]:
        async def run() -> list[tuple[Entity, float]]:
            embedding = await self.gateway.embed_query(query)
            # Chunk hits collapse onto their logical id, so over-fetch a little
            return await self.repository.vector_search(
                embedding,
                min(limit * 2, config.search_limit),
                include_tool_calls=config.include_tool_calls,
                min_score=config.min_relevance,
            )

        try:
            hits = await asyncio.wait_for(run(), self.search_timeout)
        except TimeoutError as e:
            raise UpstreamTimeoutError(
                message=f"Search exceeded {self.search_timeout}s",
                details={"source": "dispatcher", "operation": "vector_search"},
            ) from e
        return hits[:limit]

    async def vector_search(self, args: VectorSearchArgs, config: IndexConfig) -> SearchResponse:
        hits = await self._search(args.query, args.limit, config)
        return SearchResponse(
            query=args.query,
            results=[self._search_result(entity, score, config) for entity, score in hits],
        )

    async def get_cluster(self, args: GetClusterArgs, config: IndexConfig) -> ClusterResponse:
        cluster = self.index_builder.get_cluster(args.cluster_id)
        if cluster is not None:
            summary, start, end, member_ids = cluster.summary, cluster.start, cluster.end, cluster.member_ids
        else:
            topic = await self.repository.get_topic(args.cluster_id)
            if topic is None:
                raise NotFoundError.for_id(args.cluster_id, resource_type="cluster")
            summary, start, end, member_ids = topic.summary, topic.start, topic.end, topic.member_ids

        members = await self.repository.get_many(member_ids)
        if not config.include_tool_calls:
            members = [member for member in members if not isinstance(member, ToolCall)]
        members.sort(key=lambda entity: (entity.timestamp, entity.id))
        return ClusterResponse(
            cluster_id=args.cluster_id,
            summary=summary,
            start=start,
            end=end,
            count=len(members),
            items=[entity_response(entity) for entity in members[: args.limit]],
        )

    async def get_period_messages(self, args: GetPeriodMessagesArgs, config: IndexConfig) -> PeriodResponse:
        start, end = period_range(args.period)
        messages = await self.repository.in_period(start, end, args.limit)
        return PeriodResponse(
            period=args.period,
            start=start,
            end=end,
            items=[MessageResponse.from_message(m) for m in messages if isinstance(m, Message)],
        )

    async def get_conversation_thread(self, args: GetConversationThreadArgs, config: IndexConfig) -> ThreadResponse:
        root = await self.repository.get_by_id(args.id)
        if not isinstance(root, Message):
            raise InvalidArgumentError(
                message=f"'{args.id}' is not a message",
                details={"source": "dispatcher", "operation": "get_conversation_thread", "field": "id"},
            )

        thread: dict[str, Message] = {root.id: root}

        # Ancestors
        current = root
        for _ in range(args.depth):
            if not current.parent_id or current.parent_id in thread:
                break
            parent = await self.repository.get_node(current.parent_id)
            if not isinstance(parent, Message) or parent.deleted:
                break
            thread[parent.id] = parent
            current = parent

        # Descendants, one level per step
        frontier = [root.id]
        for _ in range(args.depth):
            levels = await asyncio.gather(*(self.repository.replies_to(message_id) for message_id in frontier))
            frontier = []
            for replies in levels:
                for reply in replies:
                    if reply.id not in thread:
                        thread[reply.id] = reply
                        frontier.append(reply.id)
            if not frontier:
                break

        ordered = sorted(thread.values(), key=lambda message: (message.timestamp, message.id))
        return ThreadResponse(
            message_id=root.id,
            depth=args.depth,
            messages=[MessageResponse.from_message(message) for message in ordered],
        )

    async def get_tool_call(self, args: GetToolCallArgs, config: IndexConfig) -> ToolCallResponse:
        entity = await self.repository.get_by_id(args.id)
        if not isinstance(entity, ToolCall):
            raise NotFoundError.for_id(args.id, resource_type="tool_call")
        return ToolCallResponse.from_tool_call(entity)

    async def get_tool_calls_by_message(self, args: GetToolCallsByMessageArgs, config: IndexConfig) -> EntityListResponse:
        message = await self.repository.get_by_id(args.message_id)
        if not isinstance(message, Message):
            raise NotFoundError.for_id(args.message_id, resource_type="message")
        tool_calls = await self.repository.tool_calls_for_message(message.id)
        return EntityListResponse(items=[ToolCallResponse.from_tool_call(call) for call in tool_calls])

    async def search_and_retrieve(self, args: SearchAndRetrieveArgs, config: IndexConfig) -> SearchAndRetrieveResponse:
        hits = await self._search(args.query, SEARCH_POOL, config)
        if args.auto_limit and hits:
            top = hits[0][1]
            # Floor scales with abs(top); the top hit always passes
            floor = top - abs(top) * (1 - AUTO_LIMIT_RATIO)
            chosen = [(entity, score) for entity, score in hits if score >= floor][:AUTO_LIMIT_MAX]
        else:
            chosen = hits[:FIXED_RETRIEVE_COUNT]

        entities = [entity for entity, _ in chosen]
        contents = await self.repository.full_contents(entities)
        items = [entity_response(entity.model_copy(update={"content": contents[entity.id]})) for entity in entities]
        return SearchAndRetrieveResponse(
            query=args.query,
            results=[self._search_result(entity, score, config) for entity, score in chosen],
            items=items,
        )
