"""Message wrapper with metadata support.

Transports exchange ``SessionMessage`` objects over anyio memory streams. The
wrapper carries the envelope plus transport-specific details the dispatcher may
need, such as the originating HTTP request.
"""

import contextvars
from dataclasses import dataclass, field
from typing import Any

from mcpkit.types import Message


@dataclass
class ServerMessageMetadata:
    """Metadata attached by server transports to incoming messages."""

    # Transport-specific request object (e.g. starlette Request for HTTP
    # transports, None for stdio).
    request_context: Any = None


@dataclass
class SessionMessage:
    """A message with specific metadata for transport-specific features."""

    message: Message
    context: contextvars.Context = field(default_factory=contextvars.copy_context)
    metadata: ServerMessageMetadata | None = None
