"""HTTP tests for the API routers over in-memory services."""

from collections.abc import AsyncGenerator

import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from httpx import ASGITransport, AsyncClient

from context_palace.api import dependencies
from context_palace.api import router as api_router
from context_palace.api.endpoints import admin
from context_palace.core.base import ApplicationError
from context_palace.core.config import IndexConfig
from context_palace.core.handlers import ErrorHandler
from context_palace.infrastructure.repositories import EntityRepository
from context_palace.services.context_service import ContextService
from context_palace.services.dispatcher import RetrievalToolDispatcher
from context_palace.services.embedding_gateway import EmbeddingGateway
from context_palace.services.maintenance import MaintenanceOrchestrator

LONG = "word " * 8000


@pytest.fixture
def app(
    service: ContextService,
    dispatcher: RetrievalToolDispatcher,
    config: IndexConfig,
    repository: EntityRepository,
    gateway: EmbeddingGateway,
) -> FastAPI:
    handler = ErrorHandler()
    application = FastAPI()

    @application.exception_handler(ApplicationError)
    async def application_error_handler(request: Request, exc: ApplicationError) -> JSONResponse:
        body = await handler.handle_async(exc, exc.level, {"path": request.url.path})
        return JSONResponse(status_code=handler.status_code_for(exc), content=body)

    application.include_router(api_router, prefix="/api/v1")
    application.include_router(admin.router)

    orchestrator = MaintenanceOrchestrator(repository, gateway, config)
    application.dependency_overrides[dependencies.get_context_service] = lambda: service
    application.dependency_overrides[dependencies.get_dispatcher] = lambda: dispatcher
    application.dependency_overrides[dependencies.get_index_config] = lambda: config
    application.dependency_overrides[dependencies.get_maintenance] = lambda: orchestrator
    return application


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client


class TestMessages:
    async def test_store_and_fetch(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/messages", json={"content": "hello there", "role": "user"})

        assert response.status_code == 201
        stored = response.json()
        assert stored["is_chunk"] is False

        fetched = await client.post("/api/v1/tools/call", json={"name": "get_by_id", "arguments": {"id": stored["id"]}})
        assert fetched.status_code == 200
        assert fetched.json()["result"]["content"] == "hello there"

    async def test_oversized_message_is_chunked(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/messages", json={"content": LONG, "role": "assistant"})

        assert response.status_code == 201
        assert response.json()["is_chunk"] is True
        assert response.json()["chunk_count"] == 3

    async def test_request_overrides_apply(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/v1/messages",
            json={"content": LONG, "role": "user", "config": {"chunk_threshold": 2000}},
        )

        assert response.json()["chunk_count"] > 3

    async def test_invalid_body(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/messages", json={"content": "", "role": "user"})

        assert response.status_code == 422

    async def test_edit_continuation_conflicts(self, client: AsyncClient, repository: EntityRepository) -> None:
        stored = (await client.post("/api/v1/messages", json={"content": LONG, "role": "user"})).json()
        head = await repository.get_with_chunks(stored["id"])
        continuation_id = head[1].id

        response = await client.patch(f"/api/v1/messages/{continuation_id}", json={"content": "rewrite"})

        assert response.status_code == 409
        assert response.json()["error_type"] == "ConflictError"

    async def test_edit_and_delete(self, client: AsyncClient) -> None:
        stored = (await client.post("/api/v1/messages", json={"content": "draft", "role": "user"})).json()

        edited = await client.patch(f"/api/v1/messages/{stored['id']}", json={"content": "final"})
        assert edited.status_code == 200
        assert edited.json()["content"] == "final"
        assert edited.json()["edited"] is True

        deleted = await client.delete(f"/api/v1/entities/{stored['id']}")
        assert deleted.json()["deleted_ids"] == [stored["id"]]

        missing = await client.post("/api/v1/tools/call", json={"name": "get_by_id", "arguments": {"id": stored["id"]}})
        assert missing.status_code == 404

    async def test_tool_call_storage(self, client: AsyncClient) -> None:
        message = (await client.post("/api/v1/messages", json={"content": "run it", "role": "user"})).json()

        response = await client.post(
            "/api/v1/tool-calls",
            json={"tool_name": "search", "arguments": '{"q": "x"}', "result": "[]", "message_id": message["id"]},
        )

        assert response.status_code == 201
        calls = await client.post(
            "/api/v1/tools/call", json={"name": "get_tool_calls_by_message", "arguments": {"message_id": message["id"]}}
        )
        assert [item["id"] for item in calls.json()["result"]["items"]] == [response.json()["id"]]


class TestContext:
    async def test_prepare_context(self, client: AsyncClient) -> None:
        for i in range(3):
            await client.post("/api/v1/messages", json={"content": f"message {i}", "role": "user"})

        response = await client.post("/api/v1/context", json={"query": "message"})

        assert response.status_code == 200
        index = response.json()
        assert index["strategy"] == "full"
        assert len(index["recent_ids"]) == 3
        assert index["token_count"] <= index["max_tokens"]

    async def test_unknown_config_field_is_rejected(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/context", json={"query": "x", "config": {"turbo": True}})

        assert response.status_code == 422


class TestTools:
    async def test_list_tools(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/tools")

        assert response.status_code == 200
        assert len(response.json()["tools"]) == 10

    async def test_invalid_arguments(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/tools/call", json={"name": "get_by_id", "arguments": {}})

        assert response.status_code == 422
        assert response.json()["error_type"] == "InvalidArgumentError"

    async def test_unknown_tool(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/tools/call", json={"name": "drop_database"})

        assert response.status_code == 422

    async def test_batch_reports_errors_per_call(self, client: AsyncClient) -> None:
        stored = (await client.post("/api/v1/messages", json={"content": "kept", "role": "user"})).json()

        response = await client.post(
            "/api/v1/tools/batch",
            json={
                "calls": [
                    {"name": "get_by_id", "arguments": {"id": stored["id"]}},
                    {"name": "get_by_id", "arguments": {"id": "missing"}},
                ]
            },
        )

        assert response.status_code == 200
        first, second = response.json()["results"]
        assert "result" in first
        assert "error" in second


class TestAdmin:
    async def test_job_status(self, client: AsyncClient) -> None:
        response = await client.get("/admin/jobs/status")

        assert response.status_code == 200
        assert response.json()["scheduler_running"] is False

    async def test_trigger(self, client: AsyncClient) -> None:
        response = await client.post("/admin/jobs/trigger/cleanup_orphan_chunks")

        assert response.status_code == 200
        assert response.json()["result"] == 0

    async def test_trigger_unknown_job(self, client: AsyncClient) -> None:
        response = await client.post("/admin/jobs/trigger/defragment")

        assert response.status_code == 404
