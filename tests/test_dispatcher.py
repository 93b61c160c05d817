"""Tests for the retrieval tool dispatcher."""

from datetime import UTC, datetime, timedelta

import pytest

from context_palace.core.config import IndexConfig
from context_palace.core.errors import InvalidArgumentError, NotFoundError
from context_palace.domain.models import ClusterSummary
from context_palace.domain.models.utils import utc_now
from context_palace.infrastructure.repositories import EntityRepository
from context_palace.services.context_service import ContextService
from context_palace.services.dispatcher import RetrievalToolDispatcher, period_range

from .fakes import FakeEmbeddingService, make_message

EXPECTED_TOOLS = {
    "get_by_id",
    "get_many_by_ids",
    "get_with_chunks",
    "vector_search",
    "get_cluster",
    "get_period_messages",
    "get_conversation_thread",
    "get_tool_call",
    "get_tool_calls_by_message",
    "search_and_retrieve",
}


class TestToolSurface:
    def test_tool_definitions(self, dispatcher: RetrievalToolDispatcher) -> None:
        definitions = dispatcher.tool_definitions()

        assert {definition["name"] for definition in definitions} == EXPECTED_TOOLS
        assert set(dispatcher.tool_names) == EXPECTED_TOOLS
        vector_search = next(d for d in definitions if d["name"] == "vector_search")
        assert vector_search["input_schema"]["required"] == ["query"]

    async def test_unknown_tool(self, dispatcher: RetrievalToolDispatcher, config: IndexConfig) -> None:
        with pytest.raises(InvalidArgumentError) as exc_info:
            await dispatcher.dispatch("drop_database", {}, config)
        assert exc_info.value.details.field == "name"

    @pytest.mark.parametrize(
        ("tool", "arguments", "field"),
        [
            ("get_by_id", {}, "id"),
            ("get_by_id", {"id": "  "}, "id"),
            ("get_by_id", {"id": "x", "extra": 1}, "extra"),
            ("vector_search", {"query": "x", "limit": 0}, "limit"),
            ("vector_search", {"query": "x", "limit": 201}, "limit"),
            ("get_many_by_ids", {"ids": []}, "ids"),
            ("get_period_messages", {"period": "yesterday"}, "period"),
            ("get_period_messages", {"period": "2026-02-10..2026-02-01"}, "period"),
            ("get_conversation_thread", {"id": "x", "depth": 0}, "depth"),
            ("search_and_retrieve", {"query": ""}, "query"),
        ],
    )
    async def test_argument_validation(
        self,
        dispatcher: RetrievalToolDispatcher,
        config: IndexConfig,
        tool: str,
        arguments: dict,
        field: str,
    ) -> None:
        with pytest.raises(InvalidArgumentError) as exc_info:
            await dispatcher.dispatch(tool, arguments, config)
        assert exc_info.value.details.field == field

    async def test_dispatch_many_reports_errors_per_call(
        self, dispatcher: RetrievalToolDispatcher, service: ContextService, config: IndexConfig
    ) -> None:
        message = await service.store_message("batch me", "user", config)

        results = await dispatcher.dispatch_many(
            [("get_by_id", {"id": message.id}), ("get_by_id", {"id": "missing"}), ("nope", None)],
            config,
        )

        assert [entry["tool"] for entry in results] == ["get_by_id", "get_by_id", "nope"]
        assert results[0]["result"]["content"] == "batch me"
        assert results[1]["error"]["error_type"] == "NotFoundError"
        assert results[2]["error"]["error_type"] == "InvalidArgumentError"


class TestLookups:
    async def test_get_by_id(
        self, dispatcher: RetrievalToolDispatcher, service: ContextService, config: IndexConfig
    ) -> None:
        message = await service.store_message("fetch me", "user", config)

        result = await dispatcher.dispatch("get_by_id", {"id": message.id}, config)

        assert result["id"] == message.id
        assert result["role"] == "user"
        assert result["is_chunk"] is False

    async def test_get_by_id_not_found(self, dispatcher: RetrievalToolDispatcher, config: IndexConfig) -> None:
        with pytest.raises(NotFoundError):
            await dispatcher.dispatch("get_by_id", {"id": "missing"}, config)

    async def test_get_many_omits_missing(
        self, dispatcher: RetrievalToolDispatcher, service: ContextService, config: IndexConfig
    ) -> None:
        first = await service.store_message("first", "user", config)
        second = await service.store_message("second", "user", config)

        result = await dispatcher.dispatch("get_many_by_ids", {"ids": [second.id, "missing", first.id]}, config)

        assert [item["id"] for item in result["items"]] == [second.id, first.id]

    async def test_get_with_chunks(
        self, dispatcher: RetrievalToolDispatcher, service: ContextService, config: IndexConfig
    ) -> None:
        content = "chunky " * 6000
        message = await service.store_message(content, "user", config)

        result = await dispatcher.dispatch("get_with_chunks", {"id": message.id}, config)

        assert result["chunk_count"] == 3
        assert result["content"] == content
        assert [chunk["chunk_index"] for chunk in result["chunks"]] == [0, 1, 2]

    async def test_continuation_ids_are_not_addressable(
        self,
        dispatcher: RetrievalToolDispatcher,
        service: ContextService,
        repository: EntityRepository,
        config: IndexConfig,
    ) -> None:
        message = await service.store_message("chunky " * 6000, "user", config)
        continuation = (await repository.get_with_chunks(message.id))[2]

        for tool in ("get_by_id", "get_with_chunks"):
            with pytest.raises(NotFoundError):
                await dispatcher.dispatch(tool, {"id": continuation.id}, config)
        with pytest.raises(NotFoundError):
            await dispatcher.dispatch("get_by_id", {"id": message.chunk_parent_id}, config)


class TestSearch:
    async def test_vector_search_ranks_and_limits(
        self, dispatcher: RetrievalToolDispatcher, service: ContextService, config: IndexConfig
    ) -> None:
        best = await service.store_message("postgres replication lag", "user", config)
        await service.store_message("postgres backups", "user", config)
        await service.store_message("lunch plans", "user", config)

        result = await dispatcher.dispatch("vector_search", {"query": "postgres replication lag", "limit": 2}, config)

        assert len(result["results"]) == 2
        assert result["results"][0]["id"] == best.id
        assert result["results"][0]["type"] == "message"
        scores = [hit["score"] for hit in result["results"]]
        assert scores == sorted(scores, reverse=True)

    async def test_vector_search_excludes_tool_calls(
        self, dispatcher: RetrievalToolDispatcher, service: ContextService, config: IndexConfig
    ) -> None:
        message = await service.store_message("compile the project", "user", config)
        await service.store_tool_call("compile", config, result="compile the project: ok", message_id=message.id)
        no_tools = config.model_copy(update={"include_tool_calls": False})

        with_tools = await dispatcher.dispatch("vector_search", {"query": "compile project"}, config)
        without = await dispatcher.dispatch("vector_search", {"query": "compile project"}, no_tools)

        assert {hit["type"] for hit in with_tools["results"]} == {"message", "tool_call"}
        assert [hit["type"] for hit in without["results"]] == ["message"]

    async def test_search_and_retrieve_returns_full_content(
        self, dispatcher: RetrievalToolDispatcher, service: ContextService, config: IndexConfig
    ) -> None:
        content = "nebula " * 6000
        message = await service.store_message(content, "user", config)
        await service.store_message("unrelated", "user", config)

        result = await dispatcher.dispatch("search_and_retrieve", {"query": "nebula"}, config)

        items = {item["id"]: item for item in result["items"]}
        assert items[message.id]["content"] == content
        assert len(result["items"]) <= 10

    async def test_search_and_retrieve_fixed_count(
        self, dispatcher: RetrievalToolDispatcher, service: ContextService, config: IndexConfig
    ) -> None:
        for i in range(8):
            await service.store_message(f"entry {i}", "user", config)

        result = await dispatcher.dispatch("search_and_retrieve", {"query": "entry", "auto_limit": False}, config)

        assert len(result["items"]) == 5
        assert [item["id"] for item in result["items"]] == [hit["id"] for hit in result["results"]]

    async def test_auto_limit_keeps_best_hit_when_scores_are_negative(
        self,
        dispatcher: RetrievalToolDispatcher,
        repository: EntityRepository,
        config: IndexConfig,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        near = make_message("least opposed")
        far = make_message("most opposed")
        await repository.create([near])
        await repository.create([far])

        async def opposed_hits(query: str, limit: int, config: IndexConfig) -> list:
            return [(near, -0.2), (far, -0.5)]

        monkeypatch.setattr(dispatcher, "_search", opposed_hits)
        result = await dispatcher.dispatch("search_and_retrieve", {"query": "anything"}, config)

        assert [item["id"] for item in result["items"]] == [near.id]
        assert [hit["score"] for hit in result["results"]] == [-0.2]


class TestClusters:
    async def test_registered_cluster(
        self,
        dispatcher: RetrievalToolDispatcher,
        service: ContextService,
        config: IndexConfig,
    ) -> None:
        first = await service.store_message("alpha", "user", config)
        second = await service.store_message("beta", "user", config)
        tool_call = await service.store_tool_call("gamma", config, result="gamma")
        now = utc_now()
        dispatcher.index_builder._register(
            [
                ClusterSummary(
                    cluster_id="c_test",
                    summary="greek letters",
                    start=now,
                    end=now,
                    count=3,
                    member_ids=[first.id, second.id, tool_call.id],
                )
            ]
        )

        result = await dispatcher.dispatch("get_cluster", {"cluster_id": "c_test"}, config)
        no_tools = await dispatcher.dispatch(
            "get_cluster", {"cluster_id": "c_test"}, config.model_copy(update={"include_tool_calls": False})
        )

        assert result["count"] == 3
        assert [item["id"] for item in result["items"]] == [first.id, second.id, tool_call.id]
        assert [item["id"] for item in no_tools["items"]] == [first.id, second.id]

    async def test_unknown_cluster(self, dispatcher: RetrievalToolDispatcher, config: IndexConfig) -> None:
        with pytest.raises(NotFoundError):
            await dispatcher.dispatch("get_cluster", {"cluster_id": "c_nope"}, config)


class TestPeriods:
    def test_named_periods(self) -> None:
        now = datetime(2026, 10, 19, 15, 30, tzinfo=UTC)

        assert period_range("today", now) == (datetime(2026, 10, 19, tzinfo=UTC), None)
        assert period_range("this_week", now) == (now - timedelta(days=7), None)
        assert period_range("this_month", now) == (now - timedelta(days=30), None)
        assert period_range("older", now) == (None, now - timedelta(days=30))

    def test_custom_range_is_inclusive(self) -> None:
        start, end = period_range("2026-02-01..2026-02-03")

        assert start == datetime(2026, 2, 1, tzinfo=UTC)
        assert end == datetime(2026, 2, 4, tzinfo=UTC)

    async def test_period_messages(
        self,
        dispatcher: RetrievalToolDispatcher,
        repository: EntityRepository,
        embedder: FakeEmbeddingService,
        config: IndexConfig,
    ) -> None:
        now = utc_now()
        recent = make_message("recent", embedder, timestamp=now - timedelta(days=2))
        old = make_message("old", embedder, timestamp=now - timedelta(days=45))
        await repository.create([recent])
        await repository.create([old])

        week = await dispatcher.dispatch("get_period_messages", {"period": "this_week"}, config)
        older = await dispatcher.dispatch("get_period_messages", {"period": "older"}, config)

        assert [item["id"] for item in week["items"]] == [recent.id]
        assert [item["id"] for item in older["items"]] == [old.id]


class TestThreadsAndToolCalls:
    async def test_conversation_thread(
        self, dispatcher: RetrievalToolDispatcher, service: ContextService, config: IndexConfig
    ) -> None:
        root = await service.store_message("root", "user", config)
        middle = await service.store_message("middle", "assistant", config, parent_id=root.id)
        leaf = await service.store_message("leaf", "user", config, parent_id=middle.id)
        deeper = await service.store_message("deeper", "assistant", config, parent_id=leaf.id)

        result = await dispatcher.dispatch("get_conversation_thread", {"id": middle.id, "depth": 1}, config)
        full = await dispatcher.dispatch("get_conversation_thread", {"id": root.id, "depth": 5}, config)

        assert [m["id"] for m in result["messages"]] == [root.id, middle.id, leaf.id]
        assert [m["id"] for m in full["messages"]] == [root.id, middle.id, leaf.id, deeper.id]

    async def test_thread_of_tool_call_is_invalid(
        self, dispatcher: RetrievalToolDispatcher, service: ContextService, config: IndexConfig
    ) -> None:
        tool_call = await service.store_tool_call("ls", config, result="a b c")

        with pytest.raises(InvalidArgumentError):
            await dispatcher.dispatch("get_conversation_thread", {"id": tool_call.id}, config)

    async def test_tool_calls_by_message(
        self, dispatcher: RetrievalToolDispatcher, service: ContextService, config: IndexConfig
    ) -> None:
        message = await service.store_message("list files", "user", config)
        first = await service.store_tool_call("ls", config, arguments="-la", result="a b", message_id=message.id)
        await service.store_tool_call("pwd", config, result="/root")

        result = await dispatcher.dispatch("get_tool_calls_by_message", {"message_id": message.id}, config)
        call = await dispatcher.dispatch("get_tool_call", {"id": first.id}, config)

        assert [item["id"] for item in result["items"]] == [first.id]
        assert call["tool_name"] == "ls"
        assert call["arguments"] == "-la"
        assert call["result"] == "a b"

    async def test_get_tool_call_rejects_messages(
        self, dispatcher: RetrievalToolDispatcher, service: ContextService, config: IndexConfig
    ) -> None:
        message = await service.store_message("not a tool", "user", config)

        with pytest.raises(NotFoundError):
            await dispatcher.dispatch("get_tool_call", {"id": message.id}, config)

    async def test_tool_calls_for_unknown_message(self, dispatcher: RetrievalToolDispatcher, config: IndexConfig) -> None:
        with pytest.raises(NotFoundError):
            await dispatcher.dispatch("get_tool_calls_by_message", {"message_id": "missing"}, config)
