from datetime import timedelta
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from context_palace.core.base import ErrorLevel
from context_palace.core.config import IndexConfig
from context_palace.core.decorators import with_error_handling
from context_palace.core.errors import NotFoundError
from context_palace.core.logging import get_logger
from context_palace.domain.models import Topic
from context_palace.domain.models.utils import ensure_utc, utc_now
from context_palace.infrastructure.repositories import EntityRepository

from .clustering import LinkageClusteringService, cluster_id_for
from .embedding_gateway import EmbeddingGateway, embedding_input
from .snippets import top_keywords

logger = get_logger(__name__)

TOPIC_WINDOW_DAYS = 30
TOPIC_INPUT_LIMIT = 2000
REEMBED_BATCH = 256


class MaintenanceOrchestrator:
    """Background jobs: topic building, orphan chunk cleanup and re-embedding.

    Jobs only use the repository's public contract and never take the
    per-id locks used by request-time reads and edits.
    """

    def __init__(
        self,
        repository: EntityRepository,
        gateway: EmbeddingGateway,
        config: IndexConfig,
        topic_interval_minutes: int = 60,
        orphan_cleanup_interval_minutes: int = 360,
        reembed_interval_minutes: int = 30,
    ):
        self.repository = repository
        self.gateway = gateway
        self.config = config
        self.scheduler = AsyncIOScheduler()
        self._jobs = {
            "build_topics": self.build_topics,
            "cleanup_orphan_chunks": self.cleanup_orphan_chunks,
            "reembed_missing": self.reembed_missing,
        }
        self._setup_jobs(topic_interval_minutes, orphan_cleanup_interval_minutes, reembed_interval_minutes)

    def _setup_jobs(self, topic_minutes: int, cleanup_minutes: int, reembed_minutes: int) -> None:
        self.scheduler.add_job(
            self.build_topics,
            "interval",
            minutes=topic_minutes,
            id="build_topics",
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.cleanup_orphan_chunks,
            "interval",
            minutes=cleanup_minutes,
            id="cleanup_orphan_chunks",
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.reembed_missing,
            "interval",
            minutes=reembed_minutes,
            id="reembed_missing",
            max_instances=1,
            coalesce=True,
        )

    async def start(self) -> None:
        self.scheduler.start()
        logger.info("MaintenanceOrchestrator started", jobs=list(self._jobs))

    async def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("MaintenanceOrchestrator shutdown complete")

    async def trigger(self, job_id: str) -> dict[str, Any]:
        """Run a job immediately, outside its schedule."""
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError.for_id(job_id, resource_type="job", action="trigger")
        logger.info(f"Manually triggering job {job_id}")
        return {"job_id": job_id, "result": await job()}

    @with_error_handling(error_level=ErrorLevel.WARNING, reraise=False)
    async def build_topics(self) -> int:
        """Cluster recently embedded entities and persist one Topic per group.

        Each run replaces the previous topic set: topics whose member set
        changed or aged out of the window are deleted after the new ones land.
        """
        since = utc_now() - timedelta(days=TOPIC_WINDOW_DAYS)
        entities = await self.repository.embedded_since(since, TOPIC_INPUT_LIMIT)
        groups: list[list[str]] = []
        if len(entities) >= self.config.min_cluster_size:
            clusterer = LinkageClusteringService(self.config.clustering_threshold, self.config.min_cluster_size)
            groups = clusterer.group([e.id for e in entities], [e.embedding or [] for e in entities])
        else:
            logger.debug("Not enough embedded entities for topic building", count=len(entities))

        by_id = {entity.id: entity for entity in entities}
        topic_ids = []
        for member_ids in groups:
            members = [by_id[i] for i in member_ids]
            timestamps = [ensure_utc(member.timestamp) for member in members]
            keywords = top_keywords([member.content[:500] for member in members])
            topic = await self.repository.save_topic(
                Topic(
                    id=cluster_id_for(member_ids),
                    summary=", ".join(keywords) if keywords else "(no keywords)",
                    start=min(timestamps),
                    end=max(timestamps),
                    member_count=len(members),
                    member_ids=member_ids,
                )
            )
            topic_ids.append(topic.id)

        pruned = await self.repository.prune_topics(topic_ids)
        logger.info(f"Built {len(groups)} topics from {len(entities)} entities", pruned=pruned)
        return len(groups)

    @with_error_handling(error_level=ErrorLevel.WARNING, reraise=False)
    async def cleanup_orphan_chunks(self) -> int:
        """Hard-delete continuation chunks and chunk groups whose chunk 0 is gone."""
        deleted = await self.repository.cleanup_orphan_chunks()
        if deleted:
            logger.info(f"Removed {deleted} orphaned chunk nodes")
        return deleted

    @with_error_handling(error_level=ErrorLevel.WARNING, reraise=False)
    async def reembed_missing(self) -> int:
        """Embed live entities stored without an embedding."""
        entities = await self.repository.missing_embeddings(REEMBED_BATCH)
        if not entities:
            return 0
        texts = {entity.id: embedding_input(entity) for entity in entities}
        # A blank continuation chunk has no snippet to fall back on
        blank = [entity.id for entity in entities if not texts[entity.id].strip()]
        if blank:
            logger.debug("Skipping blank chunks without embedding text", ids=blank)
            entities = [entity for entity in entities if entity.id not in blank]
            if not entities:
                return 0
        embeddings = await self.gateway.embed([texts[entity.id] for entity in entities])
        for entity, embedding in zip(entities, embeddings, strict=True):
            await self.repository.set_embedding(entity.id, embedding)
        logger.info(f"Re-embedded {len(entities)} entities")
        return len(entities)

    def get_job_status(self) -> dict[str, Any]:
        """Get status of all scheduled jobs."""
        jobs = self.scheduler.get_jobs()
        return {
            "scheduler_running": self.scheduler.running,
            "jobs": [
                {
                    "id": job.id,
                    "name": job.name,
                    "next_run": job.next_run_time.isoformat() if getattr(job, "next_run_time", None) else None,
                    "func": job.func.__name__,
                }
                for job in jobs
            ],
        }
