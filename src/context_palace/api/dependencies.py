"""API dependencies."""

from fastapi import HTTPException
from neo4j import AsyncDriver

from context_palace.core.config import IndexConfig
from context_palace.services.context_service import ContextService
from context_palace.services.dispatcher import RetrievalToolDispatcher
from context_palace.services.maintenance import MaintenanceOrchestrator

# These will be set by the main.py lifespan
neo4j_driver: AsyncDriver | None = None
context_service: ContextService | None = None
dispatcher: RetrievalToolDispatcher | None = None
maintenance: MaintenanceOrchestrator | None = None
index_config: IndexConfig | None = None


def get_context_service() -> ContextService:
    if context_service is None:
        raise HTTPException(status_code=503, detail="Context service not initialized")
    return context_service


def get_dispatcher() -> RetrievalToolDispatcher:
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Tool dispatcher not initialized")
    return dispatcher


def get_maintenance() -> MaintenanceOrchestrator:
    if maintenance is None:
        raise HTTPException(status_code=503, detail="Maintenance orchestrator not running")
    return maintenance


def get_index_config() -> IndexConfig:
    """Default index configuration built from settings at startup."""
    if index_config is None:
        raise HTTPException(status_code=503, detail="Configuration not initialized")
    return index_config


def get_neo4j_driver() -> AsyncDriver | None:
    return neo4j_driver


def resolve_config(base: IndexConfig, overrides: IndexConfig | None) -> IndexConfig:
    """Apply the fields a request set explicitly on top of the defaults."""
    if overrides is None:
        return base
    return base.model_copy(update=overrides.model_dump(exclude_unset=True))
