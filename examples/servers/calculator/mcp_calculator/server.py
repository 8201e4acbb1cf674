from typing import Any

import anyio
import click
import uvicorn

import mcpkit.types as types
from mcpkit.server.lowlevel import Server
from mcpkit.server.settings import Settings
from mcpkit.shared.exceptions import McpError
from mcpkit.utilities.logging import configure_logging

CALCULATOR_SCHEMA = {
    "type": "object",
    "required": ["operation", "a", "b"],
    "properties": {
        "operation": {"type": "string", "description": "One of add, subtract, multiply, divide"},
        "a": {"type": "number", "description": "First operand"},
        "b": {"type": "number", "description": "Second operand"},
    },
}


def calculate(operation: str, a: float, b: float) -> float:
    match operation:
        case "add":
            return a + b
        case "subtract":
            return a - b
        case "multiply":
            return a * b
        case "divide":
            if b == 0:
                raise McpError.of(types.BAD_REQUEST, "Division by zero")
            return a / b
        case _:
            raise McpError.of(types.BAD_REQUEST, "Invalid operation")


def create_server() -> Server:
    app = Server("mcp-calculator", version="1.0.0")

    @app.list_tools()
    async def list_tools() -> list[types.Tool]:
        return [
            types.Tool(
                name="calculator",
                description="Perform basic arithmetic on two numbers",
                input_schema=CALCULATOR_SCHEMA,
            )
        ]

    @app.call_tool()
    async def call_tool(name: str, args: dict[str, Any]) -> Any:
        if name != "calculator":
            raise McpError.of(types.NOT_FOUND, "Tool not found")
        return {"result": calculate(args["operation"], args["a"], args["b"])}

    return app


@click.command()
@click.option("--port", type=int, default=None, help="Port to listen on for HTTP and WebSocket")
@click.option(
    "--transport",
    type=click.Choice(["stdio", "http", "sse", "websocket"]),
    default="stdio",
    help="Transport type",
)
def main(port: int | None, transport: str) -> int:
    settings = Settings()
    configure_logging(settings.log_level)
    app = create_server()
    app.apply_settings(settings)

    if transport == "stdio":
        from mcpkit.server.stdio import stdio_server

        async def arun():
            async with stdio_server() as streams:
                await app.run(streams[0], streams[1], shutdown_timeout=settings.shutdown_timeout)

        anyio.run(arun)
        return 0

    if transport == "http":
        from mcpkit.server.http import create_http_app

        starlette_app = create_http_app(app, settings=settings)
    elif transport == "sse":
        from mcpkit.server.streamable_http import create_streamable_http_app

        starlette_app = create_streamable_http_app(app, settings=settings)
    else:
        from mcpkit.server.websocket import WebSocketServer, create_websocket_app

        ws_server = WebSocketServer(app, shutdown_timeout=settings.shutdown_timeout)
        starlette_app = create_websocket_app(ws_server, settings=settings)

    uvicorn.run(starlette_app, host=settings.host, port=port or settings.port)
    return 0
