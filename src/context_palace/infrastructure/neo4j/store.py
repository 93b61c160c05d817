"""Neo4j implementation of the ``GraphStore`` contract."""

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any

from neo4j import AsyncDriver, AsyncManagedTransaction
from neo4j.exceptions import (
    ClientError,
    DriverError,
    Neo4jError,
    ServiceUnavailable,
    SessionExpired,
    TransientError,
)

from context_palace.core.base import DatabaseErrorDetails, ErrorCode
from context_palace.core.errors import ServiceError, StorageError
from context_palace.core.logging import get_logger
from context_palace.domain.models import GraphModel
from context_palace.infrastructure.neo4j.filter_compiler import compile_filters
from context_palace.infrastructure.neo4j.queries import EntityQueries
from context_palace.services import Relationship

logger = get_logger(__name__)


class Neo4jGraphStore:
    """Graph store over the async Neo4j driver.

    Driver failures are translated at this boundary: connectivity and
    transient failures become ``ServiceError`` (retryable upstream failure),
    client errors such as constraint violations become ``StorageError``.
    """

    def __init__(self, driver: AsyncDriver, database: str | None = None):
        self.driver = driver
        self.database = database

    @asynccontextmanager
    async def _translate(self, operation: str, query_type: str) -> AsyncIterator[None]:
        details = DatabaseErrorDetails(
            source="neo4j_store",
            operation=operation,
            service_name="neo4j",
            query_type=query_type,
        )
        try:
            yield
        except (ServiceUnavailable, SessionExpired, TransientError) as e:
            raise ServiceError(
                message=f"Neo4j unavailable during {operation}: {e}",
                details=details,
                code=ErrorCode.DB_CONNECTION,
            ) from e
        except ClientError as e:
            raise StorageError(
                message=f"Neo4j rejected {operation}: {e}",
                details=details,
                code=ErrorCode.DB_QUERY,
            ) from e
        except (Neo4jError, DriverError) as e:
            raise ServiceError(
                message=f"Neo4j failed during {operation}: {e}",
                details=details,
                code=ErrorCode.DB_OPERATION,
            ) from e

    async def write(
        self,
        nodes: Sequence[GraphModel],
        relationships: Sequence[Relationship] = (),
        delete_ids: Sequence[str] = (),
    ) -> None:
        async def work(tx: AsyncManagedTransaction) -> None:
            if delete_ids:
                query, _ = EntityQueries.delete_nodes()
                await tx.run(query, ids=list(delete_ids))
            for node in nodes:
                query, _ = EntityQueries.upsert_node(node.labels())
                await tx.run(query, id=node.id, properties=node.to_neo4j_properties())
            for rel in relationships:
                query, _ = EntityQueries.merge_relationship(rel.type, rel.target_label)
                await tx.run(
                    query,
                    source_id=rel.source_id,
                    target_id=rel.target_id,
                    properties=dict(rel.properties),
                )

        async with self._translate("write", "write"):
            async with self.driver.session(database=self.database) as session:
                await session.execute_write(work)
        logger.debug(
            f"Wrote {len(nodes)} nodes",
            relationships=len(relationships),
            deleted=len(delete_ids),
        )

    async def get_node(self, node_id: str, label: str = "Entity") -> dict[str, Any] | None:
        query, _ = EntityQueries.get_node(label)
        async with self._translate("get_node", "read"):
            async with self.driver.session(database=self.database) as session:
                result = await session.run(query, id=node_id)
                record = await result.single()
        return dict(record["n"]) if record else None

    async def find_nodes(
        self,
        label: str = "Entity",
        filters: dict[str, Any] | None = None,
        order_by: str = "timestamp",
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        where, params = compile_filters(filters, alias="n")
        query, _ = EntityQueries.find_nodes(label, where, order_by, descending, limit is not None)
        if limit is not None:
            params["limit"] = limit
        async with self._translate("find_nodes", "read"):
            async with self.driver.session(database=self.database) as session:
                result = await session.run(query, **params)
                return [dict(record["n"]) async for record in result]

    async def vector_query(
        self,
        embedding: list[float],
        k: int,
        filters: dict[str, Any] | None = None,
        min_score: float = 0.0,
    ) -> list[tuple[dict[str, Any], float]]:
        where, params = compile_filters(filters, alias="n")
        query, _ = EntityQueries.vector_query(where)
        async with self._translate("vector_query", "vector"):
            async with self.driver.session(database=self.database) as session:
                result = await session.run(query, k=k, embedding=embedding, min_score=min_score, **params)
                return [(dict(record["n"]), float(record["score"])) async for record in result]

    async def update_nodes(self, ids: Sequence[str], properties: dict[str, Any]) -> int:
        query, _ = EntityQueries.update_nodes()
        async with self._translate("update_nodes", "write"):
            async with self.driver.session(database=self.database) as session:
                result = await session.run(query, ids=list(ids), properties=properties)
                record = await result.single()
        return record["updated"] if record else 0

    async def delete_nodes(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        query, _ = EntityQueries.delete_nodes()
        async with self._translate("delete_nodes", "write"):
            async with self.driver.session(database=self.database) as session:
                result = await session.run(query, ids=list(ids))
                record = await result.single()
        return record["deleted"] if record else 0

    async def orphan_chunk_ids(self) -> list[str]:
        query, _ = EntityQueries.orphan_chunk_ids()
        async with self._translate("orphan_chunk_ids", "read"):
            async with self.driver.session(database=self.database) as session:
                result = await session.run(query)
                return [record["id"] async for record in result]
