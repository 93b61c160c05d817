from .driver import create_neo4j_driver, ensure_schema
from .store import Neo4jGraphStore

__all__ = ["Neo4jGraphStore", "create_neo4j_driver", "ensure_schema"]
