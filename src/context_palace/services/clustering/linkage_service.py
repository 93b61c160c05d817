import hashlib

import numpy as np
from sklearn.cluster import AgglomerativeClustering

from context_palace.core.logging import get_logger

logger = get_logger(__name__)


class LinkageClusteringService:
    """Similarity grouping over embeddings.

    Complete-linkage agglomeration on cosine distance: two groups merge only
    while every cross pair stays within ``1 - threshold``, so each member of a
    returned group has cosine similarity of at least ``threshold`` with every
    other member. Groups smaller than ``min_cluster_size`` are discarded.
    Inputs are ordered by id first, which makes the result a pure function of
    (ids, embeddings, threshold, min_cluster_size).
    """

    def __init__(self, threshold: float = 0.8, min_cluster_size: int = 3):
        self.threshold = threshold
        self.min_cluster_size = min_cluster_size

    def group(self, ids: list[str], embeddings: list[list[float]]) -> list[list[str]]:
        if len(ids) != len(embeddings):
            raise ValueError("ids and embeddings must have the same length")
        if len(ids) < self.min_cluster_size or not ids:
            return []
        # The estimator needs two samples
        if len(ids) == 1:
            return [list(ids)]

        order = sorted(range(len(ids)), key=lambda i: ids[i])
        ordered_ids = [ids[i] for i in order]
        X = np.array([embeddings[i] for i in order], dtype=np.float64)

        clusterer = AgglomerativeClustering(
            n_clusters=None,
            distance_threshold=1.0 - self.threshold + 1e-9,
            metric="cosine",
            linkage="complete",
        )
        labels = clusterer.fit(X).labels_

        members: dict[int, list[str]] = {}
        for entity_id, label in zip(ordered_ids, labels.tolist(), strict=True):
            members.setdefault(int(label), []).append(entity_id)

        groups = [group for group in members.values() if len(group) >= self.min_cluster_size]
        groups.sort(key=lambda group: group[0])
        logger.debug(
            f"Clustered {len(ids)} embeddings into {len(groups)} groups",
            threshold=self.threshold,
            min_cluster_size=self.min_cluster_size,
        )
        return groups


def cluster_id_for(member_ids: list[str]) -> str:
    """Stable retrieval handle for a group of entity ids."""
    digest = hashlib.sha1(",".join(sorted(member_ids)).encode()).hexdigest()
    return f"c_{digest[:12]}"
