from .helper_types import ReadResourceContents
from .server import Server, request_ctx

__all__ = ["ReadResourceContents", "Server", "request_ctx"]
