import base64
from dataclasses import dataclass

from mcpkit.types import ReadResourceResult


@dataclass
class ReadResourceContents:
    """Contents returned from a read_resource call."""

    content: bytes
    mime_type: str = "application/octet-stream"

    def to_result(self) -> ReadResourceResult:
        """Framed form for transports that cannot carry raw bytes."""
        return ReadResourceResult(data=base64.b64encode(self.content).decode(), mime_type=self.mime_type)

    @classmethod
    def from_result(cls, result: ReadResourceResult) -> "ReadResourceContents":
        return cls(content=base64.b64decode(result.data), mime_type=result.mime_type)
