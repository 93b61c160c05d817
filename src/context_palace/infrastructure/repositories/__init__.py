from .entity import EntityRepository, build_chunk_set, entity_filters

__all__ = ["EntityRepository", "build_chunk_set", "entity_filters"]
