"""Core API endpoints for Context Palace."""

from fastapi import APIRouter, Depends
from neo4j import AsyncDriver
from neo4j.exceptions import DriverError, Neo4jError

from context_palace.api.dependencies import get_neo4j_driver
from context_palace.core.logging import get_logger
from context_palace.domain.models.utils import utc_now

logger = get_logger(__name__)

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint with application status."""
    return {
        "message": "Context Palace API",
        "version": "0.1.0",
        "status": "running",
        "features": [
            "adaptive_context_index",
            "transparent_chunking",
            "retrieval_tools",
            "message_versioning",
            "background_maintenance",
        ],
    }


@router.get("/health", operation_id="health")
async def health_check(driver: AsyncDriver | None = Depends(get_neo4j_driver)):
    """Health check endpoint; reports degraded when the graph store is unreachable."""
    database = "not_initialized"
    if driver is not None:
        try:
            await driver.verify_connectivity()
            database = "ok"
        except (Neo4jError, DriverError) as e:
            logger.warning(f"Health check could not reach Neo4j: {e}")
            database = "unreachable"
    return {
        "status": "healthy" if database == "ok" else "degraded",
        "database": database,
        "timestamp": utc_now().isoformat(),
    }
