"""Neo4j driver creation and schema management."""

from neo4j import AsyncDriver, AsyncGraphDatabase

from context_palace.core.base import ErrorLevel
from context_palace.core.decorators import with_error_handling
from context_palace.core.logging import get_logger
from context_palace.infrastructure.neo4j.queries import SchemaQueries

logger = get_logger(__name__)


@with_error_handling(error_level=ErrorLevel.ERROR)
async def create_neo4j_driver(
    uri: str,
    user: str,
    password: str,
    max_connection_pool_size: int = 50,
    max_connection_lifetime: int = 3600,
) -> AsyncDriver:
    """Create a Neo4j driver and verify connectivity.

    The caller owns the driver and must ``close()`` it on shutdown.
    """
    logger.info(
        "Creating Neo4j driver",
        uri=uri,
        pool_size=max_connection_pool_size,
        connection_lifetime=max_connection_lifetime,
    )
    driver = AsyncGraphDatabase.driver(
        uri,
        auth=(user, password),
        max_connection_pool_size=max_connection_pool_size,
        max_connection_lifetime=max_connection_lifetime,
    )
    await driver.verify_connectivity()
    logger.info("Neo4j connection established")
    return driver


@with_error_handling(error_level=ErrorLevel.ERROR)
async def ensure_schema(driver: AsyncDriver, dimensions: int) -> None:
    """Create constraints, property indexes and the embedding vector index.

    A vector index with a different dimensionality is dropped and recreated.
    """
    async with driver.session() as session:
        for statement in SchemaQueries.constraints():
            await session.run(statement)

        query, _ = SchemaQueries.check_vector_index()
        result = await session.run(query)
        record = await result.single()
        if record:
            index_config = (record["options"] or {}).get("indexConfig", {})
            current = index_config.get("vector.dimensions")
            if current == dimensions:
                logger.debug("Vector index already matches configured dimensions", dimensions=dimensions)
                return
            logger.warning(
                f"Vector index has {current} dimensions, recreating with {dimensions}",
                current=current,
                dimensions=dimensions,
            )
            query, _ = SchemaQueries.drop_vector_index()
            await session.run(query)

        query, _ = SchemaQueries.create_vector_index(dimensions)
        await session.run(query)
        logger.info(f"Vector index ready with {dimensions} dimensions")
