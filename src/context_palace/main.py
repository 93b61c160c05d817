"""Context Palace FastAPI application.

The lifespan is the composition root: it is the only place settings are read.
Every component below it receives its collaborators and an explicit
``IndexConfig``.
"""

import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import logfire
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from neo4j import AsyncDriver

from context_palace.api import dependencies
from context_palace.api import router as api_router
from context_palace.api.endpoints import admin, core
from context_palace.core.base import ApplicationError
from context_palace.core.config import get_settings
from context_palace.core.handlers import ErrorHandler
from context_palace.core.logging import clear_log_context, get_logger, setup_logging
from context_palace.infrastructure.embeddings import EmbeddingCache, VoyageEmbeddingService
from context_palace.infrastructure.neo4j import Neo4jGraphStore, create_neo4j_driver, ensure_schema
from context_palace.infrastructure.repositories import EntityRepository
from context_palace.services.chunker import ContentChunker
from context_palace.services.context_service import ContextService
from context_palace.services.dispatcher import RetrievalToolDispatcher
from context_palace.services.embedding_gateway import EmbeddingGateway
from context_palace.services.index_builder import IndexBuilder
from context_palace.services.maintenance import MaintenanceOrchestrator
from context_palace.services.tokens import TokenCounter
from context_palace.services.versioning import VersioningManager

# Logfire configuration; the token is optional for local runs
logfire.configure(service_name="context-palace", token=os.getenv("LOGFIRE_TOKEN"), send_to_logfire="if-token-present")
logfire.install_auto_tracing(
    modules=["context_palace"],
    min_duration=0.01,
    check_imported_modules="ignore",
)
setup_logging(level=get_settings().log_level)
logger = get_logger(__name__)

error_handler = ErrorHandler()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None]:
    """Wire storage, embeddings, services and background maintenance."""
    settings = get_settings()
    neo4j_driver: AsyncDriver | None = None
    embedding_service: VoyageEmbeddingService | None = None
    maintenance: MaintenanceOrchestrator | None = None

    logger.info("Starting Context Palace application")

    try:
        logger.info("Initializing Neo4j connection")
        neo4j_driver = await create_neo4j_driver(
            settings.neo4j_uri,
            settings.neo4j_user,
            settings.neo4j_password.get_secret_value(),
            max_connection_pool_size=settings.neo4j_pool_size,
        )

        logger.info("Initializing embedding service")
        embedding_service = VoyageEmbeddingService(
            api_key=settings.voyage_api_key.get_secret_value(),
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            cache=EmbeddingCache(neo4j_driver) if settings.embedding_cache_enabled else None,
        )
        dimensions = embedding_service.get_model_dimensions()
        logger.info(f"Using embedding model '{embedding_service.model}' with {dimensions} dimensions")
        await ensure_schema(neo4j_driver, dimensions=dimensions)

        index_config = settings.index_config()
        counter = TokenCounter(settings.token_encoding)
        chunker = ContentChunker(counter)
        repository = EntityRepository(
            Neo4jGraphStore(neo4j_driver),
            max_retries=settings.storage_max_retries,
            retry_delay=settings.storage_retry_delay,
        )
        gateway = EmbeddingGateway(
            embedding_service,
            batch_size=settings.embedding_batch_size,
            concurrency=settings.embedding_concurrency,
            timeout=settings.embedding_timeout,
        )
        index_builder = IndexBuilder(counter)

        dependencies.neo4j_driver = neo4j_driver
        dependencies.index_config = index_config
        dependencies.context_service = ContextService(
            repository,
            gateway,
            chunker,
            index_builder,
            versioning=VersioningManager(repository, chunker, gateway),
            search_timeout=settings.search_timeout,
            index_build_timeout=settings.index_build_timeout,
        )
        dependencies.dispatcher = RetrievalToolDispatcher(
            repository, gateway, index_builder, search_timeout=settings.search_timeout
        )

        if settings.maintenance_enabled:
            logger.info("Starting maintenance orchestrator")
            maintenance = MaintenanceOrchestrator(
                repository,
                gateway,
                index_config,
                topic_interval_minutes=settings.topic_interval_minutes,
                orphan_cleanup_interval_minutes=settings.orphan_cleanup_interval_minutes,
                reembed_interval_minutes=settings.reembed_interval_minutes,
            )
            await maintenance.start()
            dependencies.maintenance = maintenance
        else:
            logger.info("Maintenance orchestrator disabled by configuration")

        logger.info("Context Palace application started")
        yield

    except Exception as e:
        logger.error(f"Failed to start Context Palace: {e}", exc_info=True)
        raise

    finally:
        logger.info("Shutting down Context Palace")
        if maintenance:
            await maintenance.shutdown()
        if embedding_service:
            await embedding_service.close()
        if neo4j_driver:
            await neo4j_driver.close()
        dependencies.neo4j_driver = None
        dependencies.context_service = None
        dependencies.dispatcher = None
        dependencies.maintenance = None
        dependencies.index_config = None
        logger.info("Context Palace shutdown complete")


app = FastAPI(
    title="Context Palace API",
    description="Adaptive context index engine for long-running AI conversations",
    version="0.1.0",
    lifespan=lifespan,
)

logfire.instrument_fastapi(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def reset_log_context(request: Request, call_next):
    clear_log_context()
    return await call_next(request)


@app.exception_handler(ApplicationError)
async def application_error_handler(request: Request, exc: ApplicationError) -> JSONResponse:
    body = await error_handler.handle_async(exc, exc.level, {"path": request.url.path})
    return JSONResponse(status_code=error_handler.status_code_for(exc), content=body)


app.include_router(api_router, prefix="/api/v1")
app.include_router(core.router)
app.include_router(admin.router)


if __name__ == "__main__":
    logger.info("Starting Context Palace development server")
    uvicorn.run("context_palace.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info", access_log=True)
