from collections.abc import AsyncGenerator
from typing import Any

import httpx
import pytest

import mcpkit.types as types
from mcpkit.server.http import create_http_app
from mcpkit.server.lowlevel import Server
from mcpkit.server.settings import Settings
from mcpkit.shared.exceptions import McpError

TEST_SERVER_BASE_URL = "http://testserver"


def make_calculator_server() -> Server:
    server = Server("calculator")

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return [
            types.Tool(
                name="calculator",
                input_schema={
                    "type": "object",
                    "required": ["operation", "a", "b"],
                    "properties": {
                        "operation": {"type": "string"},
                        "a": {"type": "number"},
                        "b": {"type": "number"},
                    },
                },
            )
        ]

    @server.call_tool()
    async def call_tool(name: str, args: dict[str, Any]) -> Any:
        if name != "calculator":
            raise McpError.of(types.NOT_FOUND, "Tool not found")
        a, b = args["a"], args["b"]
        match args["operation"]:
            case "add":
                return {"result": a + b}
            case "subtract":
                return {"result": a - b}
            case "multiply":
                return {"result": a * b}
            case "divide":
                if b == 0:
                    raise McpError.of(types.BAD_REQUEST, "Division by zero")
                return {"result": a / b}
            case _:
                raise McpError.of(types.BAD_REQUEST, "Invalid operation")

    @server.read_resource()
    async def read_resource(uri: str):
        return "# Notes", "text/markdown"

    return server


@pytest.fixture
async def http_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    app = create_http_app(make_calculator_server(), settings=Settings(max_body_bytes=1024))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url=TEST_SERVER_BASE_URL) as client:
        yield client


@pytest.mark.anyio
async def test_call_tool_per_path(http_client: httpx.AsyncClient):
    args = {"operation": "divide", "a": 15, "b": 3}
    response = await http_client.post("/callTool", json={"name": "calculator", "args": args})
    assert response.status_code == 200
    assert response.json() == {"result": {"result": 5}}


@pytest.mark.anyio
async def test_error_code_becomes_status(http_client: httpx.AsyncClient):
    args = {"operation": "divide", "a": 1, "b": 0}
    response = await http_client.post("/callTool", json={"name": "calculator", "args": args})
    assert response.status_code == 400
    assert response.json() == {"error": {"code": 400, "message": "Division by zero"}}

    response = await http_client.post("/callTool", json={"name": "abacus", "args": {}})
    assert response.status_code == 404
    assert response.json()["error"]["message"] == "Tool not found"


@pytest.mark.anyio
async def test_envelope_style(http_client: httpx.AsyncClient):
    response = await http_client.post(
        "/mcp",
        json={
            "method": "callTool",
            "params": {"name": "calculator", "args": {"operation": "add", "a": 2, "b": 2}},
            "id": 9,
        },
    )
    assert response.status_code == 200
    assert response.json() == {"result": {"result": 4}, "id": 9}


@pytest.mark.anyio
async def test_envelope_requires_method(http_client: httpx.AsyncClient):
    response = await http_client.post("/mcp", json={"params": {}})
    assert response.status_code == 400

    response = await http_client.post("/mcp", content=b"[1, 2]")
    assert response.status_code == 400


@pytest.mark.anyio
async def test_list_tools(http_client: httpx.AsyncClient):
    response = await http_client.post("/listTools")
    assert response.status_code == 200
    assert [tool["name"] for tool in response.json()["result"]] == ["calculator"]


@pytest.mark.anyio
async def test_unknown_method(http_client: httpx.AsyncClient):
    response = await http_client.post("/frobnicate", json={})
    assert response.status_code == 404
    assert response.json()["error"]["message"] == "unknown method: frobnicate"


@pytest.mark.anyio
async def test_invalid_json(http_client: httpx.AsyncClient):
    response = await http_client.post("/callTool", content=b"{not json")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == 400


@pytest.mark.anyio
async def test_read_resource_writes_raw_bytes(http_client: httpx.AsyncClient):
    response = await http_client.post("/readResource", json={"uri": "file:///notes.md"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/markdown")
    assert response.content == b"# Notes"


@pytest.mark.anyio
async def test_notifications_answer_202(http_client: httpx.AsyncClient):
    response = await http_client.post("/initialized")
    assert response.status_code == 202
    assert response.content == b""


@pytest.mark.anyio
async def test_health(http_client: httpx.AsyncClient):
    response = await http_client.get("/health")
    assert response.status_code == 200
    assert response.text == "OK"


@pytest.mark.anyio
async def test_wrong_verb(http_client: httpx.AsyncClient):
    response = await http_client.get("/callTool")
    assert response.status_code == 405


@pytest.mark.anyio
async def test_body_too_large(http_client: httpx.AsyncClient):
    response = await http_client.post("/callTool", json={"name": "calculator", "args": {"pad": "x" * 2048}})
    assert response.status_code == 413
    assert response.json() == {"error": {"code": 413, "message": "Request too large"}}


def test_settings_session_ttl_applies_to_server():
    server = Server("ttl")
    create_http_app(server, settings=Settings(session_ttl=60), middleware=[])
    assert server.sessions.ttl.total_seconds() == 60
