"""
Context Palace MCP server over stdio.

Lists the retrieval tools served by the HTTP API and proxies every call to
it, so an MCP client navigates the same store the context index was built
from. The FastAPI app must be running at ``base_url``.
"""

import json
import sys
from typing import Any

import anyio
import httpx
import mcp.types as types
from mcp.server.lowlevel import Server
from mcp.server.stdio import stdio_server

from context_palace.core.config import get_settings
from context_palace.core.logging import get_logger, setup_logging

logger = get_logger(__name__)

PREPARE_CONTEXT_TOOL = types.Tool(
    name="prepare_context",
    description="Build the adaptive context index for a query (recent window plus relevant history)",
    inputSchema={
        "type": "object",
        "required": ["query"],
        "properties": {
            "query": {"type": "string", "description": "Text the index should be relevant to"},
            "max_index_tokens": {"type": "integer", "description": "Token budget for the index", "minimum": 64},
        },
    },
)


def _text(payload: Any) -> list[types.ContentBlock]:
    text = payload if isinstance(payload, str) else json.dumps(payload, indent=2, default=str)
    return [types.TextContent(type="text", text=text)]


def _error_text(name: str, response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"Error calling {name}: HTTP {response.status_code}"
    return f"Error calling {name} ({response.status_code}): {body.get('error', body)}"


def create_mcp_server(base_url: str = "http://localhost:8000", timeout: float = 30.0) -> Server:
    """Create the MCP server proxying to the HTTP API at ``base_url``."""
    app = Server("context-palace")

    @app.list_tools()
    async def list_tools() -> list[types.Tool]:
        async with httpx.AsyncClient(base_url=base_url, timeout=timeout) as client:
            response = await client.get("/api/v1/tools")
            response.raise_for_status()
            definitions = response.json()["tools"]
        tools = [
            types.Tool(name=tool["name"], description=tool["description"], inputSchema=tool["input_schema"])
            for tool in definitions
        ]
        return [PREPARE_CONTEXT_TOOL, *tools]

    @app.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.ContentBlock]:
        """Route tool calls to the FastAPI endpoints."""
        async with httpx.AsyncClient(base_url=base_url, timeout=timeout) as client:
            try:
                if name == "prepare_context":
                    body: dict[str, Any] = {"query": arguments.get("query", "")}
                    if "max_index_tokens" in arguments:
                        body["config"] = {"max_index_tokens": arguments["max_index_tokens"]}
                    response = await client.post("/api/v1/context", json=body)
                    if response.is_error:
                        return _text(_error_text(name, response))
                    return _text(response.json()["text"])

                response = await client.post("/api/v1/tools/call", json={"name": name, "arguments": arguments})
                if response.is_error:
                    return _text(_error_text(name, response))
                return _text(response.json()["result"])

            except httpx.HTTPError as e:
                logger.warning(f"MCP proxy call failed: {e!s}", tool=name)
                return _text(f"Error calling {name}: {e!s}")

    return app


async def main():
    """Main entry point for the stdio MCP server."""
    settings = get_settings()
    # stdout carries the MCP protocol
    setup_logging(level=settings.log_level, colors=False, stream=sys.stderr)
    logger.info("Starting Context Palace MCP server with stdio transport", base_url=settings.api_base_url)

    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{settings.api_base_url}/health", timeout=5.0)
            logger.info(f"API server status: {response.status_code}")
    except httpx.HTTPError as e:
        # The API may come up after the client connects
        logger.error(f"Cannot connect to API server: {e}")

    app = create_mcp_server(settings.api_base_url)
    async with stdio_server() as streams:
        await app.run(streams[0], streams[1], app.create_initialization_options())


def run() -> None:
    anyio.run(main)


if __name__ == "__main__":
    run()
