"""Logging utilities for mcpkit."""

import logging
from collections.abc import Mapping
from typing import Any, Literal

from rich.console import Console
from rich.logging import RichHandler

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

DEFAULT_SENSITIVE_KEYS = frozenset({"authorization", "cookie", "x-session-id", "token", "access_token"})


def get_logger(name: str) -> logging.Logger:
    """Get a logger nested under the mcpkit namespace.

    Args:
        name: the name of the logger, which will be prefixed with 'mcpkit.'
            unless it already is

    Returns:
        a configured logger instance
    """
    if name != "mcpkit" and not name.startswith("mcpkit."):
        name = f"mcpkit.{name}"
    return logging.getLogger(name)


def configure_logging(level: LogLevel = "INFO") -> None:
    """Configure logging for mcpkit.

    Records go to stderr so they never mix with a stdio transport's stdout.

    Args:
        level: the log level to use
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def redact_sensitive_data(
    data: Mapping[str, Any] | None,
    sensitive_keys: frozenset[str] | set[str] | None = None,
) -> Mapping[str, Any] | None:
    """Return a shallow copy with sensitive values replaced by "***".

    Keys are compared case-insensitively, so HTTP header mappings can be passed
    directly.
    """
    if data is None:
        return None

    sensitive_keys = sensitive_keys or DEFAULT_SENSITIVE_KEYS
    return {key: "***" if key.lower() in sensitive_keys else value for key, value in data.items()}
