"""The mcpkit command line: scaffold, run and package MCP servers."""

from .cli import cli

__all__ = ["cli"]
