"""Pytest fixtures wiring the services over in-memory fakes."""

import pytest

from context_palace.core.config import IndexConfig
from context_palace.infrastructure.repositories import EntityRepository
from context_palace.services.chunker import ContentChunker
from context_palace.services.context_service import ContextService
from context_palace.services.dispatcher import RetrievalToolDispatcher
from context_palace.services.embedding_gateway import EmbeddingGateway
from context_palace.services.index_builder import IndexBuilder
from context_palace.services.tokens import TokenCounter
from context_palace.services.versioning import VersioningManager

from .fakes import FakeEmbeddingService, InMemoryGraphStore


@pytest.fixture
def config() -> IndexConfig:
    """Default knobs, with every similarity counted as a match."""
    return IndexConfig(min_relevance=-1.0)


@pytest.fixture
def store() -> InMemoryGraphStore:
    return InMemoryGraphStore()


@pytest.fixture
def embedder() -> FakeEmbeddingService:
    return FakeEmbeddingService()


@pytest.fixture
def counter() -> TokenCounter:
    return TokenCounter()


@pytest.fixture
def chunker(counter: TokenCounter) -> ContentChunker:
    return ContentChunker(counter)


@pytest.fixture
def repository(store: InMemoryGraphStore) -> EntityRepository:
    return EntityRepository(store, max_retries=2, retry_delay=0)


@pytest.fixture
def gateway(embedder: FakeEmbeddingService) -> EmbeddingGateway:
    return EmbeddingGateway(embedder, batch_size=2, concurrency=2, timeout=1.0)


@pytest.fixture
def builder(counter: TokenCounter) -> IndexBuilder:
    return IndexBuilder(counter)


@pytest.fixture
def versioning(repository: EntityRepository, chunker: ContentChunker, gateway: EmbeddingGateway) -> VersioningManager:
    return VersioningManager(repository, chunker, gateway)


@pytest.fixture
def service(
    repository: EntityRepository,
    gateway: EmbeddingGateway,
    chunker: ContentChunker,
    builder: IndexBuilder,
    versioning: VersioningManager,
) -> ContextService:
    return ContextService(
        repository,
        gateway,
        chunker,
        builder,
        versioning=versioning,
        search_timeout=0.5,
        index_build_timeout=2.0,
    )


@pytest.fixture
def dispatcher(
    repository: EntityRepository,
    gateway: EmbeddingGateway,
    builder: IndexBuilder,
) -> RetrievalToolDispatcher:
    return RetrievalToolDispatcher(repository, gateway, builder, search_timeout=0.5)
