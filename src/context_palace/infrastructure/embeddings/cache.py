import hashlib

from neo4j import AsyncDriver

from context_palace.core.decorators import with_session


class EmbeddingCache:
    """Neo4j-backed cache for embedding vectors, keyed by model and text.

    Keying on the model prevents serving vectors from a previous model after
    the configured model changes.
    """

    def __init__(self, driver: AsyncDriver, ttl_days: int = 30):
        self.driver = driver
        self.ttl_days = ttl_days

    @staticmethod
    def cache_key(text: str, model: str) -> str:
        return hashlib.sha256(f"{model}::{text}".encode()).hexdigest()

    @with_session()
    async def get_cached(self, session, text: str, model: str) -> list[float] | None:
        result = await session.run(
            """
            MATCH (e:EmbeddingCache {cache_key: $key, model: $model})
            WHERE e.created > datetime() - duration({days: $ttl_days})
            SET e.hit_count = COALESCE(e.hit_count, 0) + 1
            RETURN e.vector AS embedding
            """,
            key=self.cache_key(text, model),
            model=model,
            ttl_days=self.ttl_days,
        )
        record = await result.single()
        return record["embedding"] if record else None

    @with_session()
    async def store(self, session, text: str, model: str, embedding: list[float], dimensions: int) -> None:
        await session.run(
            """
            MERGE (e:EmbeddingCache {cache_key: $key, model: $model})
            ON CREATE SET e.hit_count = 0
            SET e.vector = $embedding,
                e.dimensions = $dimensions,
                e.created = datetime(),
                e.text_preview = LEFT($text, 100)
            """,
            key=self.cache_key(text, model),
            model=model,
            embedding=embedding,
            dimensions=dimensions,
            text=text,
        )
