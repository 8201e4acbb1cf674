"""
ServerSession Module

A ``ServerSession`` holds the per-connection state of one client: its
initialization state, the client info and capabilities captured by
``initialize``, its lifetime, and the requests currently in flight. Transports
create one per connection and close it when the connection goes away.

Common usage pattern:
```
    server = Server(name)

    @server.call_tool()
    async def handle_tool_call(name: str, args: dict[str, Any]) -> Any:
        session = server.request_context.session
        # Check client capabilities before proceeding
        if session.check_client_capability(
            types.ClientCapabilities(experimental={"advanced_tools": {}})
        ):
            return await perform_advanced_tool_operation(args)
        return await perform_basic_tool_operation(args)
```
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum

import anyio

import mcpkit.types as types
from mcpkit.server.models import InitializationOptions
from mcpkit.shared.exceptions import McpError
from mcpkit.shared.version import SUPPORTED_PROTOCOL_VERSIONS

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = timedelta(hours=24)


class InitializationState(Enum):
    NotInitialized = 1
    Initializing = 2
    Initialized = 3


class ServerSession:
    def __init__(
        self,
        init_options: InitializationOptions,
        *,
        stateless: bool = False,
        ttl: timedelta = DEFAULT_SESSION_TTL,
        manager: "SessionManager | None" = None,
    ) -> None:
        self.id = str(uuid.uuid4())
        self.created_at = datetime.now(timezone.utc)
        self.expires_at = self.created_at + ttl
        self.stateless = stateless
        self.client_info: types.Implementation | None = None
        self.client_capabilities: types.ClientCapabilities | None = None
        self.protocol_version: str | None = None
        self.client_ready = False
        self._init_options = init_options
        self._manager = manager
        # Stateless sessions skip the initialize handshake.
        self._initialization_state = (
            InitializationState.Initialized if stateless else InitializationState.NotInitialized
        )
        self._initialize_called = False
        self._in_flight: dict[types.RequestId, anyio.CancelScope] = {}
        self._closed = False

    @property
    def initialization_state(self) -> InitializationState:
        return self._initialization_state

    @property
    def initialized(self) -> bool:
        return self._initialization_state is InitializationState.Initialized

    @property
    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) > self.expires_at

    def extend(self, duration: timedelta) -> None:
        """Move the expiry deadline to ``duration`` from now."""
        self.expires_at = datetime.now(timezone.utc) + duration

    def initialize(self, params: types.InitializeRequestParams) -> types.InitializeResult:
        if self._initialize_called:
            raise McpError.of(types.BAD_REQUEST, "Session already initialized")

        self._initialize_called = True
        self._initialization_state = InitializationState.Initializing
        self.client_info = params.client_info
        self.client_capabilities = params.capabilities
        self.protocol_version = params.protocol_version
        if params.protocol_version not in SUPPORTED_PROTOCOL_VERSIONS:
            logger.warning(
                "Client requested protocol version %s, server supports %s",
                params.protocol_version,
                SUPPORTED_PROTOCOL_VERSIONS,
            )

        result = types.InitializeResult(
            protocol_version=params.protocol_version,
            capabilities=self._init_options.capabilities,
            server_info=types.Implementation(
                name=self._init_options.server_name,
                version=self._init_options.server_version,
            ),
            instructions=self._init_options.instructions,
        )
        self._initialization_state = InitializationState.Initialized
        if self._manager is not None and not self.stateless:
            self._manager.add(self)
        logger.info(
            "Session %s initialized for client %s",
            self.id,
            params.client_info.name if params.client_info else "<unknown>",
        )
        return result

    def check_client_capability(self, capability: types.ClientCapabilities) -> bool:
        """Check if the client supports a specific capability."""
        if self.client_capabilities is None:
            return False

        client_caps = self.client_capabilities

        if capability.roots is not None:
            if client_caps.roots is None:
                return False
            if capability.roots.list_changed and not client_caps.roots.list_changed:
                return False

        if capability.sampling is not None:
            if client_caps.sampling is None:
                return False

        if capability.experimental is not None:
            if client_caps.experimental is None:
                return False
            for exp_key, exp_value in capability.experimental.items():
                if exp_key not in client_caps.experimental or client_caps.experimental[exp_key] != exp_value:
                    return False

        return True

    def begin_request(self, request_id: types.RequestId, scope: anyio.CancelScope) -> None:
        if request_id in self._in_flight:
            raise McpError.of(types.CONFLICT, f"duplicate request id: {request_id}")
        self._in_flight[request_id] = scope

    def end_request(self, request_id: types.RequestId) -> None:
        self._in_flight.pop(request_id, None)

    def cancel_request(self, request_id: types.RequestId) -> bool:
        """Cancel the in-flight request with this id. Returns False if none matches."""
        scope = self._in_flight.get(request_id)
        if scope is None:
            # ids may round-trip through JSON as a different type
            scope = next((s for rid, s in self._in_flight.items() if str(rid) == str(request_id)), None)
        if scope is None:
            return False
        scope.cancel()
        return True

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def in_flight(self) -> list[types.RequestId]:
        return list(self._in_flight)

    def close(self) -> None:
        """Cancel everything still running and forget the session."""
        if self._closed:
            return
        self._closed = True
        for scope in self._in_flight.values():
            scope.cancel()
        self._in_flight.clear()
        if self._manager is not None:
            self._manager.remove(self.id)
        logger.debug("Session %s closed", self.id)


class SessionManager:
    """Registry of live sessions keyed by id.

    Sessions register themselves on ``initialize`` and are evicted when their
    connection closes or their TTL passes.
    """

    def __init__(self, ttl: timedelta = DEFAULT_SESSION_TTL):
        self.ttl = ttl
        self._sessions: dict[str, ServerSession] = {}

    def create(self, init_options: InitializationOptions, *, stateless: bool = False) -> ServerSession:
        return ServerSession(init_options, stateless=stateless, ttl=self.ttl, manager=self)

    def add(self, session: ServerSession) -> None:
        self._sessions[session.id] = session

    def get(self, session_id: str) -> ServerSession | None:
        session = self._sessions.get(session_id)
        if session is not None and session.is_expired:
            logger.info("Session %s expired", session_id)
            session.close()
            return None
        return session

    def remove(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def purge_expired(self) -> int:
        expired = [session for session in self._sessions.values() if session.is_expired]
        for session in expired:
            session.close()
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions
