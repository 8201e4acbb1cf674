from mcpkit.types import INTERNAL_ERROR, NOT_FOUND, ErrorData


class McpError(Exception):
    """Exception carrying a protocol error across the transport boundary.

    Raise it from a handler to answer with a specific code; clients raise it when
    the remote peer returns an error response instead of a result.

    Attributes:
        error: The ErrorData object with the error code, message, and optional
               additional data
    """

    error: ErrorData

    def __init__(self, error: ErrorData):
        super().__init__(error.message)
        self.error = error

    @classmethod
    def of(cls, code: int, message: str, data: dict | None = None) -> "McpError":
        return cls(ErrorData(code=code, message=message, data=data))

    @property
    def code(self) -> int:
        return self.error.code

    def __str__(self) -> str:
        return f"MCP error {self.error.code}: {self.error.message}"


class StreamClosedError(McpError):
    """Raised by stream operations after the stream has been closed."""

    def __init__(self) -> None:
        super().__init__(ErrorData(code=INTERNAL_ERROR, message="stream closed"))


class EventNotFoundError(McpError):
    def __init__(self, event_id: str) -> None:
        super().__init__(ErrorData(code=NOT_FOUND, message="event not found", data={"id": event_id}))
        self.event_id = event_id


def to_error_data(exc: BaseException) -> ErrorData:
    """Coerce any exception into ErrorData. Known errors keep their code; anything
    else becomes an internal error carrying the exception text."""
    if isinstance(exc, McpError):
        return exc.error
    return ErrorData(code=INTERNAL_ERROR, message=str(exc) or type(exc).__name__)
