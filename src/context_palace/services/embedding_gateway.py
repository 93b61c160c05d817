"""Batching and bounded-concurrency front for the embedding provider."""

import asyncio

from context_palace.core.base import ErrorLevel, ServiceErrorDetails
from context_palace.core.decorators import with_error_handling
from context_palace.core.errors import ProcessingError, UpstreamTimeoutError
from context_palace.core.logging import get_logger
from context_palace.domain.models import Entity, ToolCall
from context_palace.services import EmbeddingService

logger = get_logger(__name__)


def embedding_input(entity: Entity, content: str | None = None) -> str:
    """Text sent to the embedding provider for one stored node.

    Tool calls are prefixed with their name and arguments so an empty result
    is still searchable. A whitespace-only chunk of a message is embedded as
    the message's snippet, so every chunk of valid content gets a vector.
    """
    text = entity.content if content is None else content
    if isinstance(entity, ToolCall):
        return f"{entity.tool_name}({entity.arguments})\n{text}"
    if not text.strip():
        return entity.snippet.strip() or entity.content.strip()
    return text


class EmbeddingGateway:
    """Splits texts into provider-sized batches and embeds them concurrently.

    Output order always matches input order. Each batch call is bounded by
    ``timeout``; exceeding it raises ``UpstreamTimeoutError``.
    """

    def __init__(
        self,
        service: EmbeddingService,
        batch_size: int = 32,
        concurrency: int = 4,
        timeout: float = 30.0,
    ):
        self.service = service
        self.batch_size = max(1, batch_size)
        self.concurrency = max(1, concurrency)
        self.timeout = timeout

    @property
    def dimensions(self) -> int:
        return self.service.get_model_dimensions()

    async def embed_query(self, text: str) -> list[float]:
        try:
            return await asyncio.wait_for(self.service.embed_text(text), self.timeout)
        except TimeoutError as e:
            raise self._timeout_error("embed_query", 1) from e

    @with_error_handling(error_level=ErrorLevel.ERROR, reraise=True)
    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        blank = [i for i, text in enumerate(texts) if not text.strip()]
        if blank:
            raise ProcessingError(
                message="Cannot embed blank text",
                details={"source": "embedding_gateway", "operation": "embed", "blank_positions": blank},
            )

        batches = [texts[i : i + self.batch_size] for i in range(0, len(texts), self.batch_size)]
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(batch: list[str]) -> list[list[float]]:
            async with semaphore:
                try:
                    return await asyncio.wait_for(self.service.embed_batch(batch), self.timeout)
                except TimeoutError as e:
                    raise self._timeout_error("embed_batch", len(batch)) from e

        results = await asyncio.gather(*(run(batch) for batch in batches))
        embeddings = [vector for batch_result in results for vector in batch_result]
        if len(embeddings) != len(texts):
            raise ProcessingError(
                message="Embedding provider returned a different number of vectors",
                details={
                    "source": "embedding_gateway",
                    "operation": "embed",
                    "expected": len(texts),
                    "received": len(embeddings),
                },
            )

        logger.debug(f"Embedded {len(texts)} texts in {len(batches)} batches")
        return embeddings

    def _timeout_error(self, operation: str, size: int) -> UpstreamTimeoutError:
        return UpstreamTimeoutError(
            message=f"Embedding call exceeded {self.timeout}s",
            details=ServiceErrorDetails(
                source="embedding_gateway",
                operation=operation,
                service_name="embeddings",
                batch_size=size,
            ),
        )
