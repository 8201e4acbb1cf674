from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic

from typing_extensions import TypeVar

from mcpkit.shared.progress import ProgressTracker
from mcpkit.shared.stream import StreamPipe
from mcpkit.types import RequestId

if TYPE_CHECKING:
    from mcpkit.server.session import ServerSession

RequestT = TypeVar("RequestT", default=Any)


@dataclass
class RequestContext(Generic[RequestT]):
    """State visible to a handler for the duration of one request."""

    request_id: RequestId | None
    method: str
    session: "ServerSession"
    request: RequestT | None = None
    # Set by transports that can stream partial results (WebSocket, SSE).
    stream: StreamPipe | None = None
    progress: ProgressTracker = field(default_factory=ProgressTracker)
