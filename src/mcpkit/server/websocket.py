"""
WebSocket Server Transport Module

Frames are JSON text messages ``{"type": ..., "payload": ..., "id": ...}``. The
``type`` names either a protocol method (MCP over WebSocket) or an
application-level channel registered with ``register_handler``.

Replies reuse the request ``id`` and are typed ``<type>Response``; failures are
sent as ``{"type": "error", "payload": {"code": ..., "message": ...}}``.

Example usage:
```
    ws_server = WebSocketServer(server)
    app = create_websocket_app(ws_server)
    uvicorn.run(app, host="127.0.0.1", port=8000)
```
"""

import itertools
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import anyio
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

import mcpkit.types as types
from mcpkit.server.lowlevel.server import Server
from mcpkit.server.middleware import build_middleware
from mcpkit.server.session import ServerSession
from mcpkit.server.settings import Settings
from mcpkit.shared.exceptions import McpError, StreamClosedError, to_error_data
from mcpkit.shared.stream import StreamPipe

logger = logging.getLogger(__name__)

ERROR_TYPE = "error"
STREAM_TYPE = "stream"

# Close codes
NORMAL_CLOSURE = 1000
POLICY_VIOLATION = 1008
TRY_AGAIN_LATER = 1013


class WebSocketMessage(types.MCPModel):
    type: str
    payload: Any = None
    id: types.RequestId | None = None

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {"type": self.type, "payload": self.payload}
        if self.id is not None:
            wire["id"] = self.id
        return wire

    @classmethod
    def error(cls, error: types.ErrorData, id: types.RequestId | None = None) -> "WebSocketMessage":
        return cls(type=ERROR_TYPE, payload=error.to_wire(), id=id)


MessageHandler = Callable[["WebSocketStream", WebSocketMessage], Awaitable[Any]]


class WebSocketStream:
    """One accepted socket. Writes are serialized so frames never interleave."""

    _ids = itertools.count(1)

    def __init__(self, websocket: WebSocket):
        self.id = next(self._ids)
        self.websocket = websocket
        self.session: ServerSession | None = None
        # Scope of the task group serving this socket; cancelling it ends the connection.
        self.cancel_scope: anyio.CancelScope | None = None
        self._write_lock = anyio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: WebSocketMessage) -> None:
        async with self._write_lock:
            if self._closed:
                raise StreamClosedError()
            try:
                await self.websocket.send_text(json.dumps(message.to_wire(), separators=(",", ":")))
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                logger.debug("WebSocket %d write failed: %s", self.id, exc)
                self._closed = True
                raise StreamClosedError() from exc

    async def receive(self) -> str:
        """Next text frame. Raises StreamClosedError once the socket is gone."""
        if self._closed and self.websocket.application_state != WebSocketState.CONNECTED:
            raise StreamClosedError()
        try:
            return await self.websocket.receive_text()
        except (WebSocketDisconnect, RuntimeError) as exc:
            self._closed = True
            raise StreamClosedError() from exc

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        async with self._write_lock:
            if self._closed:
                return
            self._closed = True
            try:
                await self.websocket.close(code=code, reason=reason)
            except (RuntimeError, OSError) as exc:
                logger.debug("WebSocket %d close failed: %s", self.id, exc)

    def abort(self) -> None:
        """Stop serving the socket without waiting for a pending write to finish."""
        self._closed = True
        if self.cancel_scope is not None:
            self.cancel_scope.cancel()


class WebSocketServer:
    def __init__(
        self,
        server: Server | None = None,
        *,
        shutdown_timeout: float = 5.0,
        send_timeout: float = 5.0,
    ):
        """
        Args:
            server: Server whose protocol methods are served over the sockets.
            shutdown_timeout: How long ``stop()`` waits for connections to end.
            send_timeout: How long a broadcast waits on one socket before that
                client is disconnected as too slow.
        """
        self.shutdown_timeout = shutdown_timeout
        self.send_timeout = send_timeout
        self.handlers: dict[str, MessageHandler] = {}
        self.server: Server | None = None
        self._connections: dict[int, WebSocketStream] = {}
        self._all_closed = anyio.Event()
        self._all_closed.set()
        self._shutting_down = False
        if server is not None:
            self.attach(server)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def register_handler(self, message_type: str, handler: MessageHandler) -> None:
        """Route frames of ``message_type`` to ``handler``.

        A returned ``WebSocketMessage`` is sent as-is; any other non-None return
        value is sent back as a ``<type>Response`` frame.
        """
        logger.debug("Registering WebSocket handler for %s", message_type)
        self.handlers[message_type] = handler

    def attach(self, server: Server) -> None:
        """Serve every protocol method of ``server`` over this socket server."""
        self.server = server
        for method in types.METHODS:
            self.register_handler(method, self._handle_mcp)

    async def handle_websocket(self, websocket: WebSocket) -> None:
        if self._shutting_down:
            await self._refuse(websocket)
            return

        await websocket.accept()
        stream = WebSocketStream(websocket)
        if self.server is not None:
            stream.session = self.server.create_session()
        self._connections[stream.id] = stream
        self._all_closed = anyio.Event()
        logger.info("WebSocket %d connected (%d total)", stream.id, len(self._connections))

        try:
            async with anyio.create_task_group() as tg:
                stream.cancel_scope = tg.cancel_scope
                while True:
                    try:
                        text = await stream.receive()
                    except StreamClosedError:
                        break

                    try:
                        message = WebSocketMessage.model_validate_json(text)
                    except ValidationError:
                        logger.warning("Invalid WebSocket frame on connection %d", stream.id)
                        error = types.ErrorData(code=types.BAD_REQUEST, message="invalid message")
                        await self._reply(stream, WebSocketMessage.error(error))
                        continue

                    if message.id is not None:
                        tg.start_soon(self._handle_message, stream, message)
                    else:
                        await self._handle_message(stream, message)

                # The peer is gone: nothing in flight can be answered any more.
                tg.cancel_scope.cancel()
        finally:
            self._connections.pop(stream.id, None)
            if stream.session is not None:
                stream.session.close()
            if not self._connections:
                self._all_closed.set()
            logger.info("WebSocket %d disconnected (%d total)", stream.id, len(self._connections))

    async def _refuse(self, websocket: WebSocket) -> None:
        logger.info("Refusing WebSocket connection during shutdown")
        if "websocket.http.response" in websocket.scope.get("extensions", {}):
            await websocket.send_denial_response(PlainTextResponse("Server shutting down", status_code=503))
        else:
            await websocket.close(code=TRY_AGAIN_LATER, reason="Server shutting down")

    async def _handle_message(self, stream: WebSocketStream, message: WebSocketMessage) -> None:
        handler = self.handlers.get(message.type)
        if handler is None:
            logger.warning("No handler for WebSocket message type %s", message.type)
            error = types.ErrorData(code=types.NOT_FOUND, message=f"unknown message type: {message.type}")
            await self._reply(stream, WebSocketMessage.error(error, message.id))
            return

        try:
            result = await handler(stream, message)
        except McpError as err:
            await self._reply(stream, WebSocketMessage.error(err.error, message.id))
            return
        except Exception as exc:
            logger.exception("WebSocket handler for %s failed", message.type)
            await self._reply(stream, WebSocketMessage.error(to_error_data(exc), message.id))
            return

        if result is not None:
            await self._reply(stream, result if isinstance(result, WebSocketMessage) else _response(message, result))

    async def _handle_mcp(self, stream: WebSocketStream, message: WebSocketMessage) -> WebSocketMessage | None:
        server, session = self.server, stream.session
        if server is None or session is None:
            raise McpError.of(types.INTERNAL_ERROR, "no server attached")
        request = types.Request(id=message.id, method=message.type, params=message.payload)
        pipe = StreamPipe()

        async def pump_chunks() -> None:
            async for chunk in pipe:
                payload = json.loads(chunk.to_json())
                await self._reply(stream, WebSocketMessage(type=STREAM_TYPE, payload=payload, id=message.id))

        async with anyio.create_task_group() as tg:
            tg.start_soon(pump_chunks)
            try:
                reply = await server.dispatch(request, session, request_data=stream.websocket, stream=pipe)
            finally:
                pipe.close_writer()

        match reply:
            case None:
                return None
            case types.ErrorResponse(error=error):
                return WebSocketMessage.error(error, message.id)
            case types.Response(result=result):
                return _response(message, result)

    async def _reply(self, stream: WebSocketStream, message: WebSocketMessage) -> None:
        try:
            await stream.send(message)
        except StreamClosedError:
            logger.debug("Dropping %s frame for closed WebSocket %d", message.type, stream.id)

    async def broadcast(self, message: WebSocketMessage) -> int:
        """Send ``message`` to every connection; returns how many received it.

        Sockets are written concurrently. A socket that does not take the frame
        within ``send_timeout`` is disconnected.
        """
        delivered = 0

        async def deliver(stream: WebSocketStream) -> None:
            nonlocal delivered
            try:
                with anyio.fail_after(self.send_timeout):
                    await stream.send(message)
                delivered += 1
            except StreamClosedError:
                logger.warning("Dropped broadcast to WebSocket %d", stream.id)
            except TimeoutError:
                logger.warning("WebSocket %d is too slow, disconnecting", stream.id)
                await self._close_stream(stream, POLICY_VIOLATION, "Client too slow")

        async with anyio.create_task_group() as tg:
            for stream in list(self._connections.values()):
                tg.start_soon(deliver, stream)
        return delivered

    async def _close_stream(self, stream: WebSocketStream, code: int, reason: str) -> None:
        # A writer stuck on the socket holds its lock; give up on it after send_timeout.
        with anyio.move_on_after(self.send_timeout) as scope:
            await stream.close(code, reason)
        if scope.cancelled_caught:
            stream.abort()

    async def stop(self) -> None:
        """Close every socket with a normal closure and wait for the connections to end.

        Connections still open after ``shutdown_timeout`` are aborted.
        """
        self._shutting_down = True
        logger.info("Stopping WebSocket server with %d connections", len(self._connections))
        with anyio.move_on_after(self.shutdown_timeout):
            async with anyio.create_task_group() as tg:
                for stream in list(self._connections.values()):
                    tg.start_soon(stream.close, NORMAL_CLOSURE, "Server shutting down")
            await self._all_closed.wait()

        if self._connections:
            logger.warning("Aborting %d WebSocket connections after shutdown timeout", len(self._connections))
            for stream in list(self._connections.values()):
                stream.abort()


def _response(message: WebSocketMessage, result: Any) -> WebSocketMessage:
    return WebSocketMessage(type=f"{message.type}Response", payload=result, id=message.id)


def create_websocket_app(
    ws_server: WebSocketServer,
    *,
    settings: Settings | None = None,
    middleware: list[Middleware] | None = None,
    path: str = "/",
) -> Starlette:
    """Build a Starlette app accepting WebSocket upgrades at ``path``.

    Explicitly configured ``settings`` (``shutdown_timeout``, ``session_ttl``)
    override the values ``ws_server`` and its attached server were built with.
    """
    settings = settings or Settings()
    if middleware is None:
        middleware = build_middleware(settings)
    if "shutdown_timeout" in settings.model_fields_set:
        ws_server.shutdown_timeout = settings.shutdown_timeout
    if ws_server.server is not None:
        ws_server.server.apply_settings(settings)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        yield
        await ws_server.stop()

    async def health(request: Request) -> Response:
        if ws_server.shutting_down:
            return PlainTextResponse("Shutting down", status_code=types.SERVICE_UNAVAILABLE)
        return PlainTextResponse("OK")

    return Starlette(
        debug=settings.debug,
        routes=[
            Route("/health", endpoint=health, methods=["GET"]),
            WebSocketRoute(path, endpoint=ws_server.handle_websocket),
        ],
        middleware=middleware,
        lifespan=lifespan,
    )
