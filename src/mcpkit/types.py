"""Wire envelope and data model for the Model Context Protocol.

Every transport carries the same three message shapes:

- ``Request``: ``{"method": ..., "params": ..., "id": ...}``. A request without an
  ``id`` is still answered; the ``initialized`` and ``cancel`` methods are
  notifications and are never answered.
- ``Response``: ``{"result": ..., "id": ...}``
- ``ErrorResponse``: ``{"error": {"code": ..., "message": ..., "data": ...}, "id": ...}``
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Final, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

PROTOCOL_VERSION: Final[str] = "1.0"

RequestId = str | int

# Method names
INITIALIZE: Final = "initialize"
INITIALIZED: Final = "initialized"
PING: Final = "ping"
CANCEL: Final = "cancel"
LIST_TOOLS: Final = "listTools"
CALL_TOOL: Final = "callTool"
LIST_PROMPTS: Final = "listPrompts"
GET_PROMPT: Final = "getPrompt"
LIST_RESOURCES: Final = "listResources"
READ_RESOURCE: Final = "readResource"
LIST_RESOURCE_TEMPLATES: Final = "listResourceTemplates"

NOTIFICATION_METHODS: Final = frozenset({INITIALIZED, CANCEL})

METHODS: Final = frozenset(
    {
        INITIALIZE,
        INITIALIZED,
        PING,
        CANCEL,
        LIST_TOOLS,
        CALL_TOOL,
        LIST_PROMPTS,
        GET_PROMPT,
        LIST_RESOURCES,
        READ_RESOURCE,
        LIST_RESOURCE_TEMPLATES,
    }
)

# Error codes follow HTTP status semantics
BAD_REQUEST: Final = 400
UNAUTHORIZED: Final = 401
FORBIDDEN: Final = 403
NOT_FOUND: Final = 404
METHOD_NOT_ALLOWED: Final = 405
CONFLICT: Final = 409
PAYLOAD_TOO_LARGE: Final = 413
TOO_MANY_REQUESTS: Final = 429
REQUEST_CANCELLED: Final = 499
INTERNAL_ERROR: Final = 500
SERVICE_UNAVAILABLE: Final = 503
GATEWAY_TIMEOUT: Final = 504


class MCPModel(BaseModel):
    """Base class for all protocol types. Unknown fields are kept for forward compatibility."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ErrorData(MCPModel):
    """Error information carried across the transport boundary."""

    code: int
    message: str
    data: dict[str, Any] | None = None


class Request(MCPModel):
    id: RequestId | None = None
    method: str
    params: Any = None

    @property
    def is_notification(self) -> bool:
        return self.method in NOTIFICATION_METHODS


class Response(MCPModel):
    id: RequestId | None = None
    result: Any = None

    def to_wire(self) -> dict[str, Any]:
        # A null result is still a result, so it is never dropped.
        wire: dict[str, Any] = {"result": self.result}
        if self.id is not None:
            wire["id"] = self.id
        return wire


class ErrorResponse(MCPModel):
    id: RequestId | None = None
    error: ErrorData


Message = Request | Response | ErrorResponse


def parse_message(raw: str | bytes | dict[str, Any]) -> Message:
    """Decode one envelope. Raises ``ValueError`` for anything that is not a JSON object
    and ``pydantic.ValidationError`` for an object of the wrong shape."""
    data = json.loads(raw) if isinstance(raw, str | bytes) else raw
    if not isinstance(data, dict):
        raise ValueError("envelope must be a JSON object")
    if "method" in data:
        return Request.model_validate(data)
    if "error" in data:
        return ErrorResponse.model_validate(data)
    return Response.model_validate(data)


def dump_message(message: Message) -> str:
    return json.dumps(message.to_wire(), separators=(",", ":"))


class Implementation(MCPModel):
    """Name and version of an MCP peer."""

    name: str
    version: str


class RootsCapability(MCPModel):
    list_changed: Annotated[bool, Field(alias="listChanged")] = False


class SamplingCapability(MCPModel):
    pass


class PromptsCapability(MCPModel):
    list_changed: Annotated[bool, Field(alias="listChanged")] = False


class ResourcesCapability(MCPModel):
    subscribe: bool = False
    list_changed: Annotated[bool, Field(alias="listChanged")] = False


class ToolsCapability(MCPModel):
    list_changed: Annotated[bool, Field(alias="listChanged")] = False


class LoggingCapability(MCPModel):
    pass


class ClientCapabilities(MCPModel):
    """Capabilities a client may support. An absent sub-object means unsupported."""

    roots: RootsCapability | None = None
    sampling: SamplingCapability | None = None
    experimental: dict[str, Any] | None = None


class ServerCapabilities(MCPModel):
    """Capabilities a server may support. An absent sub-object means unsupported."""

    prompts: PromptsCapability | None = None
    resources: ResourcesCapability | None = None
    tools: ToolsCapability | None = None
    logging: LoggingCapability | None = None
    experimental: dict[str, Any] | None = None


class InitializeRequestParams(MCPModel):
    protocol_version: Annotated[str, Field(alias="protocolVersion")]
    client_info: Annotated[Implementation | None, Field(alias="clientInfo")] = None
    capabilities: ClientCapabilities = Field(default_factory=ClientCapabilities)


class InitializeResult(MCPModel):
    """Server's response to an initialize request."""

    protocol_version: Annotated[str, Field(alias="protocolVersion")]
    capabilities: ServerCapabilities
    server_info: Annotated[Implementation, Field(alias="serverInfo")]
    instructions: str | None = None


class PingParams(MCPModel):
    timestamp: int | None = None


class PingResult(MCPModel):
    timestamp: int | None = None
    server_timestamp: Annotated[int, Field(alias="serverTimestamp")]


class CancelParams(MCPModel):
    id: RequestId


class Parameter(MCPModel):
    type: str
    description: str = ""


class Parameters(MCPModel):
    type: str = "object"
    properties: dict[str, Parameter] = Field(default_factory=dict)


class Tool(MCPModel):
    """Definition for a tool the client can call."""

    name: str
    description: str = ""
    parameters: Parameters | None = None
    input_schema: Annotated[dict[str, Any] | None, Field(alias="inputSchema")] = None
    annotations: dict[str, Any] | None = None


class Prompt(MCPModel):
    """A prompt or prompt template that the server offers."""

    name: str
    description: str = ""
    parameters: dict[str, Any] | None = None


class Resource(MCPModel):
    """A known resource that the server is capable of reading."""

    uri: str
    name: str
    description: str | None = None
    mime_type: Annotated[str, Field(alias="mimeType")] = "application/octet-stream"


class ResourceTemplate(MCPModel):
    """A template description for resources available on the server."""

    uri_template: Annotated[str, Field(alias="uriTemplate")]
    name: str
    description: str | None = None


class CallToolParams(MCPModel):
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class GetPromptParams(MCPModel):
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ReadResourceParams(MCPModel):
    uri: str


class ReadResourceResult(MCPModel):
    """Framed form of a resource read: base64 payload plus its MIME type."""

    data: str
    mime_type: Annotated[str, Field(alias="mimeType")]


tool_list_adapter = TypeAdapter(list[Tool])
prompt_list_adapter = TypeAdapter(list[Prompt])
resource_list_adapter = TypeAdapter(list[Resource])
resource_template_list_adapter = TypeAdapter(list[ResourceTemplate])


class ProgressState(str, Enum):
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (ProgressState.COMPLETED, ProgressState.FAILED)


class Progress(MCPModel):
    """Snapshot of a long-running operation."""

    id: str
    state: ProgressState
    message: str = ""
    percentage: float = 0
    details: dict[str, Any] | None = None
    error: ErrorData | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ChunkType(str, Enum):
    DATA = "data"
    PROGRESS = "progress"
    ERROR = "error"
    COMPLETE = "complete"


class StreamChunk(MCPModel):
    """One unit of a streamed response.

    ``data`` holds raw JSON text so structured payloads are forwarded verbatim.
    ``request_id`` names the request the chunk belongs to on transports that
    multiplex several requests over one stream.
    """

    type: ChunkType
    data: str | None = None
    progress: Progress | None = None
    error: ErrorData | None = None
    request_id: RequestId | None = Field(default=None, alias="requestId")

    def to_json(self) -> str:
        parts = [f'"type":"{self.type.value}"']
        if self.request_id is not None:
            parts.append(f'"requestId":{json.dumps(self.request_id)}')
        if self.data is not None:
            parts.append(f'"data":{self.data}')
        if self.progress is not None:
            parts.append(f'"progress":{self.progress.model_dump_json(by_alias=True, exclude_none=True)}')
        if self.error is not None:
            parts.append(f'"error":{self.error.model_dump_json(exclude_none=True)}')
        return "{" + ",".join(parts) + "}"

    @classmethod
    def from_json(cls, raw: str | bytes) -> "StreamChunk":
        obj = json.loads(raw)
        if "data" in obj:
            obj["data"] = json.dumps(obj["data"], separators=(",", ":"))
        return cls.model_validate(obj)


class StoredEvent(MCPModel):
    """An event kept by an event store for SSE resume.

    ``stream_id`` addresses the event to the SSE clients that connected with that
    stream id; events without one go to every client.
    """

    id: str
    type: str = "message"
    data: str
    stream_id: str | None = Field(default=None, alias="streamId")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
