"""mcpkit: a Model Context Protocol toolkit.

Build MCP servers that expose tools, prompts and resources over stdio, HTTP,
Server-Sent Events or WebSocket, and clients that talk to them.

## Example - create a server

```python
import anyio

from mcpkit import Server, types
from mcpkit.server.stdio import stdio_server

server = Server("demo")

@server.list_tools()
async def list_tools() -> list[types.Tool]:
    return [types.Tool(name="add", description="Add two numbers")]

@server.call_tool()
async def call_tool(name: str, args: dict) -> int:
    return args["a"] + args["b"]

async def main():
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream)

anyio.run(main)
```

## Example - create a client

```python
from mcpkit import ClientSession, StdioServerParameters, stdio_client

server_params = StdioServerParameters(command="python", args=["server.py"])

async with stdio_client(server_params) as (read, write):
    async with ClientSession(read, write) as session:
        await session.initialize()
        tools = await session.list_tools()
        result = await session.call_tool("add", {"a": 5, "b": 3})
```
"""

from mcpkit import types
from mcpkit.client.session import ClientSession
from mcpkit.client.stdio import StdioServerParameters, stdio_client
from mcpkit.server.lowlevel import Server
from mcpkit.server.session import ServerSession
from mcpkit.server.stdio import stdio_server
from mcpkit.shared.exceptions import McpError
from mcpkit.shared.progress import ProgressTracker
from mcpkit.shared.stream import StreamPipe

__all__ = [
    "ClientSession",
    "McpError",
    "ProgressTracker",
    "Server",
    "ServerSession",
    "StdioServerParameters",
    "StreamPipe",
    "stdio_client",
    "stdio_server",
    "types",
]
