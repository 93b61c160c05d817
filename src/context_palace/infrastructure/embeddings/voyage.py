"""Voyage AI embedding service."""

from typing import Any, cast

import voyageai
import voyageai.error

from context_palace.core.base import ErrorLevel, ServiceErrorDetails
from context_palace.core.circuit_breaker import CircuitBreaker, RetryWithCircuitBreaker
from context_palace.core.decorators import with_error_handling
from context_palace.core.errors import (
    AuthenticationError,
    ProcessingError,
    RateLimitError,
    ServiceError,
    UpstreamTimeoutError,
)
from context_palace.core.logging import get_logger
from context_palace.infrastructure.embeddings.cache import EmbeddingCache

logger = get_logger(__name__)

MappedError = RateLimitError | UpstreamTimeoutError | AuthenticationError | ServiceError | ProcessingError

MODEL_DIMENSIONS = {
    "voyage-01": 1024,
    "voyage-02": 1536,
    "voyage-large-2": 1536,
    "voyage-code-2": 1536,
    "voyage-3-large": 1024,
    "voyage-3": 1024,
}


class VoyageEmbeddingService:
    """Voyage AI embedding service behind a circuit breaker.

    Documents are embedded with ``input_type="document"`` and queries with
    ``input_type="query"``. Provider exceptions are mapped to the
    application error taxonomy so callers can retry or fall back.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "voyage-large-2",
        dimensions: int | None = None,
        cache: EmbeddingCache | None = None,
    ) -> None:
        """Initialize the Voyage embedding service.

        Raises:
            AuthenticationError: If no API key is configured
        """
        if not api_key:
            raise AuthenticationError(
                message="Voyage API key not configured",
                details=ServiceErrorDetails(
                    source="VoyageEmbeddingService",
                    operation="initialization",
                    service_name="Voyage AI",
                ),
            )

        self.model = model
        self.dimensions = dimensions or MODEL_DIMENSIONS.get(model, 1024)
        # voyageai does not export a public type for the client
        self.client: Any = voyageai.AsyncClient(api_key=api_key)
        self.cache = cache

        self._circuit_breaker = CircuitBreaker(
            name="voyage_api",
            failure_threshold=3,
            recovery_timeout=30.0,
            expected_exception_types=(RateLimitError, UpstreamTimeoutError, ServiceError),
            success_threshold=2,
        )
        self._retry_handler = RetryWithCircuitBreaker(
            circuit_breaker=self._circuit_breaker,
            max_retries=3,
            initial_delay=1.0,
            backoff_factor=2.0,
            max_delay=30.0,
            retryable_exceptions=(RateLimitError, UpstreamTimeoutError),
        )

    async def _call_voyage_api(self, texts: list[str], input_type: str) -> list[list[float]]:
        """Single provider call, wrapped by the circuit breaker."""
        try:
            response = await self.client.embed(texts=texts, model=self.model, input_type=input_type)
        except voyageai.error.VoyageError as e:
            raise self._map_error(e, len(texts)) from e

        embeddings = getattr(response, "embeddings", [])
        if not embeddings or len(embeddings) != len(texts):
            raise ProcessingError(
                message="Voyage API returned incomplete embeddings",
                details=ServiceErrorDetails(
                    source="voyage_embedding",
                    operation="embed_batch",
                    service_name="voyage",
                    endpoint="/embeddings",
                    status_code=200,
                ),
            )
        return [cast("list[float]", embedding) for embedding in embeddings]

    @with_error_handling(error_level=ErrorLevel.ERROR)
    async def embed_text(self, text: str) -> list[float]:
        """Embed a search query, consulting the cache first."""
        if not text.strip():
            raise ProcessingError(
                message="Cannot embed empty text",
                details={"source": "voyage_embedding", "operation": "embed_text", "text_length": len(text)},
            )

        if self.cache:
            cached = await self.cache.get_cached(text, self.model)
            if cached:
                logger.debug(f"Embedding cache hit for text: {text[:50]}... (model: {self.model})")
                return cached

        embedding = (await self._retry_handler.call_async(self._call_voyage_api, [text], "query"))[0]

        if self.cache:
            await self.cache.store(text, self.model, embedding, self.get_model_dimensions())
        return embedding

    @with_error_handling(error_level=ErrorLevel.ERROR, reraise=True)
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed documents with circuit breaker and retry logic.

        Raises:
            ProcessingError: If the batch contains blank text or the response is incomplete
            ServiceError: If the circuit is open or the service fails
        """
        if not texts:
            return []
        if any(not text.strip() for text in texts):
            raise ProcessingError(
                message="Batch contains empty texts",
                details={
                    "source": "voyage_embedding",
                    "operation": "embed_batch",
                    "batch_size": len(texts),
                },
            )
        return await self._retry_handler.call_async(self._call_voyage_api, texts, "document")

    def _map_error(self, e: Exception, batch_size: int) -> MappedError:
        details = ServiceErrorDetails(
            source="VoyageEmbeddingService",
            operation="embed",
            service_name="Voyage AI",
            endpoint="/embeddings",
            batch_size=batch_size,
            model=self.model,
        )
        if isinstance(e, voyageai.error.RateLimitError):
            details.status_code = 429
            return RateLimitError(message="Rate limit exceeded for embeddings API", details=details)
        if isinstance(e, voyageai.error.Timeout | voyageai.error.APIConnectionError):
            details.status_code = 408
            return UpstreamTimeoutError(message="Embeddings API request timed out", details=details)
        if isinstance(e, voyageai.error.AuthenticationError):
            details.status_code = 401
            return AuthenticationError(message="Authentication failed for embeddings API", details=details)
        if isinstance(e, voyageai.error.ServiceUnavailableError | voyageai.error.ServerError):
            details.status_code = 503
            return ServiceError(message=f"Embeddings API unavailable: {e!s}", details=details)
        return ProcessingError(message=f"Failed to generate embeddings: {e!s}", details=details)

    def get_model_dimensions(self) -> int:
        return self.dimensions

    async def close(self) -> None:
        """Nothing to release; the voyageai client holds no persistent connection."""
