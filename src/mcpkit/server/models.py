"""
This module provides simpler types to use with the server for managing
initialization.
"""

from pydantic import BaseModel

from mcpkit.types import ServerCapabilities


class InitializationOptions(BaseModel):
    server_name: str
    server_version: str
    capabilities: ServerCapabilities
    instructions: str | None = None
