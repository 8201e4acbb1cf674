"""MCP client side: the session and its transports."""

from mcpkit.client.session import ClientSession
from mcpkit.client.stdio import StdioServerParameters, stdio_client

__all__ = ["ClientSession", "StdioServerParameters", "stdio_client"]
