"""Tests for message edits and chunk-set replacement."""

import asyncio

import pytest

from context_palace.core.config import IndexConfig
from context_palace.core.errors import ConflictError, InvalidArgumentError, NotFoundError
from context_palace.infrastructure.repositories import EntityRepository
from context_palace.services.context_service import ContextService
from context_palace.services.versioning import VersioningManager

from .fakes import InMemoryGraphStore

LONG = "word " * 8000  # three chunks at the default threshold


class TestEdit:
    async def test_edit_appends_history(
        self, service: ContextService, versioning: VersioningManager, config: IndexConfig
    ) -> None:
        message = await service.store_message("first draft", "user", config)

        edited = await versioning.edit(message.id, "second draft", config)

        assert edited.id == message.id
        assert edited.edited is True
        assert edited.content == "second draft"
        assert [record.content for record in edited.edit_history] == ["first draft"]
        stored = await service.repository.get_by_id(message.id)
        assert stored.content == "second draft"
        assert stored.embedding is not None

    async def test_history_accumulates(
        self, service: ContextService, versioning: VersioningManager, config: IndexConfig
    ) -> None:
        message = await service.store_message("v1", "assistant", config)
        await versioning.edit(message.id, "v2", config)
        edited = await versioning.edit(message.id, "v3", config)

        assert [record.content for record in edited.edit_history] == ["v1", "v2"]

    async def test_edit_into_chunks(
        self,
        service: ContextService,
        versioning: VersioningManager,
        repository: EntityRepository,
        config: IndexConfig,
    ) -> None:
        message = await service.store_message("short", "user", config)

        await versioning.edit(message.id, LONG, config)

        chunks = await repository.get_with_chunks(message.id)
        assert len(chunks) == 3
        assert chunks[0].id == message.id
        assert "".join(chunk.content for chunk in chunks) == LONG
        assert [chunk.content for chunk in chunks[0].edit_history] == ["short"]

    async def test_edit_with_long_whitespace_tail(
        self,
        service: ContextService,
        versioning: VersioningManager,
        repository: EntityRepository,
        config: IndexConfig,
    ) -> None:
        small = config.model_copy(update={"chunk_threshold": 16})
        content = "new text" + " " * 300
        message = await service.store_message("old text", "user", small)

        await versioning.edit(message.id, content, small)

        chunks = await repository.get_with_chunks(message.id)
        assert len(chunks) > 1
        assert "".join(chunk.content for chunk in chunks) == content
        assert all(chunk.embedding for chunk in chunks)

    async def test_chunked_message_stays_chunked(
        self,
        service: ContextService,
        versioning: VersioningManager,
        repository: EntityRepository,
        store: InMemoryGraphStore,
        config: IndexConfig,
    ) -> None:
        message = await service.store_message(LONG, "user", config)
        old_group = message.chunk_parent_id

        edited = await versioning.edit(message.id, "now it is short", config)

        chunks = await repository.get_with_chunks(message.id)
        assert len(chunks) == 1
        assert chunks[0].is_chunk is True
        assert chunks[0].content == "now it is short"
        assert edited.edit_history[0].content == LONG
        # The old group and its continuations are gone
        assert old_group not in store.nodes
        assert all(props.get("chunk_parent_id") != old_group for _, props in store.nodes.values())

    async def test_rechunk_replaces_whole_set(
        self,
        service: ContextService,
        versioning: VersioningManager,
        repository: EntityRepository,
        store: InMemoryGraphStore,
        config: IndexConfig,
    ) -> None:
        message = await service.store_message(LONG, "user", config)
        longer = "text " * 16000

        await versioning.edit(message.id, longer, config)

        chunks = await repository.get_with_chunks(message.id)
        assert len(chunks) == 5
        assert "".join(chunk.content for chunk in chunks) == longer
        entities = store.labelled("Entity")
        assert len(entities) == 5
        assert len(store.labelled("ChunkGroup")) == 1


class TestEditRejections:
    async def test_editing_a_continuation_conflicts_without_mutation(
        self,
        service: ContextService,
        versioning: VersioningManager,
        repository: EntityRepository,
        store: InMemoryGraphStore,
        config: IndexConfig,
    ) -> None:
        message = await service.store_message(LONG, "user", config)
        continuation = (await repository.get_with_chunks(message.id))[1]
        snapshot = {node_id: dict(props) for node_id, (_, props) in store.nodes.items()}
        writes = store.write_calls

        with pytest.raises(ConflictError):
            await versioning.edit(continuation.id, "hijack", config)

        assert store.write_calls == writes
        assert {node_id: props for node_id, (_, props) in store.nodes.items()} == snapshot

    async def test_unknown_id(self, versioning: VersioningManager, config: IndexConfig) -> None:
        with pytest.raises(NotFoundError):
            await versioning.edit("missing", "content", config)

    async def test_deleted_message(self, service: ContextService, versioning: VersioningManager, config: IndexConfig) -> None:
        message = await service.store_message("gone soon", "user", config)
        await service.delete_entity(message.id)

        with pytest.raises(NotFoundError):
            await versioning.edit(message.id, "too late", config)

    async def test_tool_calls_are_not_editable(
        self, service: ContextService, versioning: VersioningManager, config: IndexConfig
    ) -> None:
        tool_call = await service.store_tool_call("search", config, arguments='{"q": "x"}', result="found")

        with pytest.raises(InvalidArgumentError):
            await versioning.edit(tool_call.id, "changed", config)

    async def test_blank_content(self, service: ContextService, versioning: VersioningManager, config: IndexConfig) -> None:
        message = await service.store_message("keep", "user", config)

        with pytest.raises(InvalidArgumentError):
            await versioning.edit(message.id, "   ", config)


class TestConcurrentReads:
    async def test_readers_see_old_or_new_set(
        self,
        service: ContextService,
        versioning: VersioningManager,
        repository: EntityRepository,
        store: InMemoryGraphStore,
        config: IndexConfig,
    ) -> None:
        message = await service.store_message(LONG, "user", config)
        replacement = "line\n" * 12000
        store.write_delay = 0.01

        async def read() -> str:
            chunks = await repository.get_with_chunks(message.id)
            assert [chunk.chunk_index for chunk in chunks] == list(range(len(chunks)))
            return "".join(chunk.content for chunk in chunks)

        results = await asyncio.gather(
            read(),
            versioning.edit(message.id, replacement, config),
            *(read() for _ in range(5)),
        )

        seen = [results[0], *results[2:]]
        assert all(content in (LONG, replacement) for content in seen)
        assert await read() == replacement
