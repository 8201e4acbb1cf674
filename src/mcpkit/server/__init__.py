from .lowlevel import ReadResourceContents, Server
from .models import InitializationOptions
from .session import InitializationState, ServerSession, SessionManager
from .settings import Settings

__all__: list[str] = [
    "InitializationOptions",
    "InitializationState",
    "ReadResourceContents",
    "Server",
    "ServerSession",
    "SessionManager",
    "Settings",
]
