"""Configuration management."""

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

SnippetStrategy = Literal["first", "semantic_core", "summary"]
IndexStrategyName = Literal["auto", "full", "snippet", "clustered", "hierarchical"]


class IndexConfig(BaseModel):
    """Immutable knobs for chunking, snippets and index building.

    Passed explicitly into every chunker/repository/index builder call.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    snippet_length: int = Field(default=200, ge=16, le=2000, description="Characters kept in previews")
    snippet_strategy: SnippetStrategy = "first"
    max_index_tokens: int = Field(default=8000, ge=64, description="Hard token budget for a built index")
    index_strategy: IndexStrategyName = Field(default="auto", description="'auto' or a forced strategy")
    clustering_threshold: float = Field(default=0.8, gt=0.0, le=1.0)
    min_cluster_size: int = Field(default=3, ge=1)
    recent_window_size: int = Field(default=10, ge=0, le=200)
    chunk_threshold: int = Field(default=4000, ge=16, description="Token count that triggers chunking")
    chunk_overlap_tokens: int = Field(
        default=0, ge=0, description="Advisory overlap recorded on chunks; never applied to stored content"
    )
    include_tool_calls: bool = True
    search_limit: int = Field(default=10000, ge=1, description="Nearest neighbours requested per search")
    min_relevance: float = Field(default=0.3, ge=-1.0, le=1.0, description="Cosine similarity floor for a match, in [-1, 1]")


class Settings(BaseSettings):
    # API Keys
    voyage_api_key: SecretStr = SecretStr("")

    # Neo4j
    neo4j_uri: str = "bolt://localhost:7687"
    neo4j_user: str = "neo4j"
    neo4j_password: SecretStr = SecretStr("password")
    neo4j_pool_size: int = 50

    # Embeddings
    embedding_model: str = "voyage-large-2"
    embedding_dimensions: int = 1536
    embedding_batch_size: int = Field(default=32, ge=1)
    embedding_concurrency: int = Field(default=4, ge=1)
    embedding_cache_enabled: bool = True

    # Timeouts (seconds) and retries
    embedding_timeout: float = 30.0
    search_timeout: float = 5.0
    index_build_timeout: float = 10.0
    storage_max_retries: int = Field(default=3, ge=1)
    storage_retry_delay: float = 0.5

    # Tokens: a tiktoken encoding name, or unset for the 4-chars-per-token estimate
    token_encoding: str | None = None

    # Index defaults
    snippet_length: int = 200
    snippet_strategy: SnippetStrategy = "first"
    max_index_tokens: int = 8000
    index_strategy: IndexStrategyName = "auto"
    clustering_threshold: float = 0.8
    min_cluster_size: int = 3
    recent_window_size: int = 10
    chunk_threshold: int = 4000
    chunk_overlap_tokens: int = 0
    include_tool_calls: bool = True
    search_limit: int = 10000
    min_relevance: float = 0.3

    # Background maintenance
    maintenance_enabled: bool = True
    topic_interval_minutes: int = 60
    orphan_cleanup_interval_minutes: int = 360
    reembed_interval_minutes: int = 30

    # App config
    debug: bool = False
    log_level: str = "INFO"
    api_base_url: str = "http://localhost:8000"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CONTEXT_PALACE_",
        extra="ignore",
    )

    def index_config(self) -> IndexConfig:
        """Build the immutable index configuration from these settings."""
        return IndexConfig(
            snippet_length=self.snippet_length,
            snippet_strategy=self.snippet_strategy,
            max_index_tokens=self.max_index_tokens,
            index_strategy=self.index_strategy,
            clustering_threshold=self.clustering_threshold,
            min_cluster_size=self.min_cluster_size,
            recent_window_size=self.recent_window_size,
            chunk_threshold=self.chunk_threshold,
            chunk_overlap_tokens=self.chunk_overlap_tokens,
            include_tool_calls=self.include_tool_calls,
            search_limit=self.search_limit,
            min_relevance=self.min_relevance,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Settings for the composition root (app startup, MCP server)."""
    return Settings()
