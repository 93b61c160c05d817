from .cache import EmbeddingCache
from .voyage import VoyageEmbeddingService

__all__ = ["EmbeddingCache", "VoyageEmbeddingService"]
