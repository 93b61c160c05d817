"""Centralized Cypher definitions.

This is the single place Cypher text is written. Labels, relationship types
and sort keys are interpolated only from internal constants; every caller
value travels as a parameter.
"""

import re
from typing import Any, LiteralString, cast

VECTOR_INDEX_NAME = "entity_embeddings"
NODE_LABELS = ("Entity", "ChunkGroup", "Topic")
RELATIONSHIP_TYPES = ("REPLIES_TO", "CHUNK_OF", "CALLED_BY", "BELONGS_TO")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _identifier(value: str) -> str:
    if not _IDENTIFIER.match(value):
        raise ValueError(f"Invalid Cypher identifier: {value!r}")
    return value


class EntityQueries:
    """Node and relationship queries for the conversation graph."""

    @staticmethod
    def upsert_node(labels: list[str]) -> tuple[LiteralString, dict[str, Any]]:
        """MERGE a node by id and replace its properties.

        ``SET n = $properties`` drops properties that are now null, which is
        what lets ``IS NULL`` filters see cleared chunk flags.
        """
        labels_str = ":".join(_identifier(label) for label in labels)
        query = f"""
            MERGE (n:{labels_str} {{id: $id}})
            SET n = $properties
            RETURN n.id AS id
            """
        return cast(LiteralString, query), {}

    @staticmethod
    def merge_relationship(relationship_type: str, target_label: str) -> tuple[LiteralString, dict[str, Any]]:
        """Merge an edge; ``ChunkGroup`` targets are created on demand, others must exist."""
        rel = _identifier(relationship_type)
        label = _identifier(target_label)
        target = "MERGE" if label == "ChunkGroup" else "MATCH"
        query = f"""
            MATCH (source:Entity {{id: $source_id}})
            {target} (target:{label} {{id: $target_id}})
            MERGE (source)-[r:{rel}]->(target)
            SET r += $properties
            RETURN count(r) AS merged
            """
        return cast(LiteralString, query), {}

    @staticmethod
    def get_node(label: str) -> tuple[LiteralString, dict[str, Any]]:
        query = f"""
            MATCH (n:{_identifier(label)} {{id: $id}})
            RETURN n
            """
        return cast(LiteralString, query), {}

    @staticmethod
    def find_nodes(
        label: str,
        where: str,
        order_by: str,
        descending: bool,
        with_limit: bool,
    ) -> tuple[LiteralString, dict[str, Any]]:
        parts = [f"MATCH (n:{_identifier(label)})"]
        if where:
            parts.append(f"WHERE {where}")
        parts.append("RETURN n")
        parts.append(f"ORDER BY n.{_identifier(order_by)} {'DESC' if descending else 'ASC'}, n.id ASC")
        if with_limit:
            parts.append("LIMIT $limit")
        return cast(LiteralString, "\n".join(parts)), {}

    @staticmethod
    def vector_query(where: str) -> tuple[LiteralString, dict[str, Any]]:
        """Similarity search using the vector index, restricted by ``where``.

        The cosine index reports ``(1 + cos) / 2``; scores are mapped back to
        plain cosine similarity in [-1, 1] before ``$min_score`` applies.
        """
        conditions = ["score >= $min_score", "n:Entity"]
        if where:
            conditions.append(where)
        query = f"""
            CALL db.index.vector.queryNodes('{VECTOR_INDEX_NAME}', $k, $embedding)
            YIELD node, score AS index_score
            WITH node AS n, 2 * index_score - 1 AS score
            WHERE {" AND ".join(conditions)}
            RETURN n, score
            ORDER BY score DESC, n.id ASC
            """
        return cast(LiteralString, query), {}

    @staticmethod
    def update_nodes() -> tuple[LiteralString, dict[str, Any]]:
        query = """
            MATCH (n:Entity)
            WHERE n.id IN $ids
            SET n += $properties
            RETURN count(n) AS updated
            """
        return cast(LiteralString, query), {}

    @staticmethod
    def delete_nodes() -> tuple[LiteralString, dict[str, Any]]:
        query = """
            MATCH (n)
            WHERE (n:Entity OR n:ChunkGroup OR n:Topic) AND n.id IN $ids
            WITH n, n.id AS deleted_id
            DETACH DELETE n
            RETURN count(deleted_id) AS deleted
            """
        return cast(LiteralString, query), {}

    @staticmethod
    def orphan_chunk_ids() -> tuple[LiteralString, dict[str, Any]]:
        """Continuation chunks without a chunk 0, and chunk groups without a chunk 0."""
        query = """
            MATCH (c:Entity)
            WHERE c.is_chunk = true AND c.chunk_index > 0
              AND NOT EXISTS {
                MATCH (head:Entity {chunk_parent_id: c.chunk_parent_id, chunk_index: 0})
              }
            RETURN c.id AS id
            UNION
            MATCH (g:ChunkGroup)
            WHERE NOT EXISTS { MATCH (:Entity {chunk_parent_id: g.id, chunk_index: 0}) }
            RETURN g.id AS id
            """
        return cast(LiteralString, query), {}


class SchemaQueries:
    """Constraints and indexes ensured at startup."""

    @staticmethod
    def constraints() -> list[LiteralString]:
        return [
            "CREATE CONSTRAINT entity_id IF NOT EXISTS FOR (n:Entity) REQUIRE n.id IS UNIQUE",
            "CREATE CONSTRAINT chunk_group_id IF NOT EXISTS FOR (n:ChunkGroup) REQUIRE n.id IS UNIQUE",
            "CREATE CONSTRAINT topic_id IF NOT EXISTS FOR (n:Topic) REQUIRE n.id IS UNIQUE",
            "CREATE INDEX entity_timestamp IF NOT EXISTS FOR (n:Entity) ON (n.timestamp)",
            "CREATE INDEX entity_chunk_parent IF NOT EXISTS FOR (n:Entity) ON (n.chunk_parent_id)",
            "CREATE INDEX entity_parent IF NOT EXISTS FOR (n:Entity) ON (n.parent_id)",
            "CREATE INDEX entity_message IF NOT EXISTS FOR (n:Entity) ON (n.message_id)",
        ]

    @staticmethod
    def check_vector_index() -> tuple[LiteralString, dict[str, Any]]:
        query = f"""
            SHOW INDEXES
            YIELD name, type, options
            WHERE name = '{VECTOR_INDEX_NAME}' AND type = 'VECTOR'
            RETURN options
            """
        return cast(LiteralString, query), {}

    @staticmethod
    def drop_vector_index() -> tuple[LiteralString, dict[str, Any]]:
        return cast(LiteralString, f"DROP INDEX {VECTOR_INDEX_NAME} IF EXISTS"), {}

    @staticmethod
    def create_vector_index(dimensions: int) -> tuple[LiteralString, dict[str, Any]]:
        query = f"""
            CREATE VECTOR INDEX {VECTOR_INDEX_NAME} IF NOT EXISTS
            FOR (n:Entity) ON n.embedding
            OPTIONS {{indexConfig: {{
              `vector.dimensions`: {int(dimensions)},
              `vector.similarity_function`: 'cosine'
            }}}}
            """
        return cast(LiteralString, query), {}
