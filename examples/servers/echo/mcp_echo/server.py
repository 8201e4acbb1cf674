from typing import Any

import anyio
import click
import uvicorn

import mcpkit.types as types
from mcpkit.server.lowlevel import Server
from mcpkit.server.settings import Settings
from mcpkit.server.websocket import WebSocketMessage, WebSocketStream
from mcpkit.shared.exceptions import McpError
from mcpkit.utilities.logging import configure_logging


def create_server() -> Server:
    app = Server("mcp-echo", version="1.0.0")

    @app.list_tools()
    async def list_tools() -> list[types.Tool]:
        return [
            types.Tool(
                name="echo",
                description="Echoes a message back",
                input_schema={
                    "type": "object",
                    "required": ["message"],
                    "properties": {"message": {"type": "string"}},
                },
            )
        ]

    @app.call_tool()
    async def call_tool(name: str, args: dict[str, Any]) -> Any:
        if name != "echo":
            raise McpError.of(types.NOT_FOUND, "Tool not found")
        return {"message": args["message"], "echo": True}

    return app


async def echo_frame(stream: WebSocketStream, message: WebSocketMessage) -> WebSocketMessage:
    """Answer a plain `echo` WebSocket frame with an `echo` frame carrying the same payload."""
    return WebSocketMessage(type="echo", payload=message.payload, id=message.id)


@click.command()
@click.option("--port", type=int, default=None, help="Port to listen on for HTTP and WebSocket")
@click.option(
    "--transport",
    type=click.Choice(["stdio", "http", "websocket"]),
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
    else:
        from mcpkit.server.websocket import WebSocketServer, create_websocket_app

        ws_server = WebSocketServer(app, shutdown_timeout=settings.shutdown_timeout)
        ws_server.register_handler("echo", echo_frame)
        starlette_app = create_websocket_app(ws_server, settings=settings)

    uvicorn.run(starlette_app, host=settings.host, port=port or settings.port)
    return 0
