from .linkage_service import LinkageClusteringService, cluster_id_for

__all__ = ["LinkageClusteringService", "cluster_id_for"]
