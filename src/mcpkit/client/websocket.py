"""
WebSocket client side.

``websocket_client`` adapts a socket to the read/write streams ``ClientSession``
consumes: requests go out as ``{"type": <method>, "payload": <params>, "id": ...}``
frames and ``<method>Response`` / ``error`` frames come back as envelopes.

``WebSocketClient`` is the frame-level client for application channels.
"""

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from types import TracebackType

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import ValidationError
from typing_extensions import Self
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

import mcpkit.types as types
from mcpkit.server.websocket import ERROR_TYPE, STREAM_TYPE, WebSocketMessage
from mcpkit.shared.exceptions import McpError
from mcpkit.shared.message import SessionMessage

logger = logging.getLogger(__name__)

Streams = tuple[MemoryObjectReceiveStream[SessionMessage | Exception], MemoryObjectSendStream[SessionMessage]]
ChunkHandlerFnT = Callable[[types.StreamChunk], Awaitable[None]]
FrameHandlerFnT = Callable[[WebSocketMessage], Awaitable[None]]

RESPONSE_SUFFIX = "Response"


def _validate_ws_url(url: str) -> None:
    if not url.startswith(("ws://", "wss://")):
        raise ValueError(f"unsupported WebSocket URL {url!r}: expected a ws:// or wss:// URL")


def _encode(message: WebSocketMessage) -> str:
    return json.dumps(message.to_wire(), separators=(",", ":"))


def frame_to_message(frame: WebSocketMessage) -> types.Message | None:
    """Envelope carried by a reply frame, or None for frames that are not replies."""
    if frame.type == ERROR_TYPE:
        try:
            error = types.ErrorData.model_validate(frame.payload)
        except ValidationError:
            error = types.ErrorData(code=types.INTERNAL_ERROR, message=str(frame.payload))
        return types.ErrorResponse(id=frame.id, error=error)
    if frame.type.endswith(RESPONSE_SUFFIX) and frame.id is not None:
        return types.Response(id=frame.id, result=frame.payload)
    return None


@asynccontextmanager
async def websocket_client(url: str, chunk_handler: ChunkHandlerFnT | None = None) -> AsyncIterator[Streams]:
    """
    WebSocket client transport for MCP, symmetrical to the server's
    ``WebSocketServer``.

    Connects to 'url' and yields (read_stream, write_stream) for
    ``ClientSession``. Stream frames emitted while a request runs go to
    ``chunk_handler``.
    """
    _validate_ws_url(url)

    read_stream_writer, read_stream = anyio.create_memory_object_stream[SessionMessage | Exception](0)
    write_stream, write_stream_reader = anyio.create_memory_object_stream[SessionMessage](0)

    async with ws_connect(url) as ws:

        async def ws_reader():
            """
            Reads frames from the socket and sends the envelopes they carry to
            read_stream_writer.
            """
            async with read_stream_writer:
                try:
                    async for raw in ws:
                        try:
                            frame = WebSocketMessage.model_validate_json(raw)
                        except ValidationError as exc:
                            await read_stream_writer.send(exc)
                            continue

                        if frame.type == STREAM_TYPE:
                            if chunk_handler is not None:
                                await chunk_handler(types.StreamChunk.from_json(json.dumps(frame.payload)))
                            continue

                        message = frame_to_message(frame)
                        if message is None:
                            logger.debug("Ignoring %s frame", frame.type)
                            continue
                        await read_stream_writer.send(SessionMessage(message))
                except ConnectionClosed as exc:
                    logger.debug("WebSocket closed: %s", exc)

        async def ws_writer():
            """
            Reads messages from write_stream_reader and sends them as frames.
            """
            async with write_stream_reader:
                async for session_message in write_stream_reader:
                    message = session_message.message
                    if not isinstance(message, types.Request):
                        logger.warning("Cannot send %s over WebSocket", type(message).__name__)
                        continue
                    frame = WebSocketMessage(type=message.method, payload=message.params, id=message.id)
                    try:
                        await ws.send(_encode(frame))
                    except ConnectionClosed:
                        logger.debug("Dropping %s frame, socket closed", message.method)

        async with anyio.create_task_group() as tg:
            tg.start_soon(ws_reader)
            tg.start_soon(ws_writer)

            try:
                yield (read_stream, write_stream)
            finally:
                # Once the caller's 'async with' block exits, we shut down
                tg.cancel_scope.cancel()
                read_stream.close()
                write_stream.close()


class WebSocketClient:
    """
    Frame-level WebSocket client.

    Handlers registered for a frame type receive every frame of that type;
    ``send_and_wait`` waits for one matching reply.

    Example:
        async with WebSocketClient("ws://127.0.0.1:8000/") as client:
            reply = await client.send_and_wait(WebSocketMessage(type="echo", payload="hi"))
    """

    def __init__(self, url: str, *, open_timeout: float | None = 10):
        _validate_ws_url(url)
        self.url = url
        self.open_timeout = open_timeout
        self.handlers: dict[str, FrameHandlerFnT] = {}
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self._ws: ClientConnection | None = None
        self._waiters: list[tuple[Callable[[WebSocketMessage], bool], MemoryObjectSendStream[WebSocketMessage]]] = []
        self._closed = anyio.Event()

    async def __aenter__(self) -> Self:
        self._ws = await ws_connect(self.url, open_timeout=self.open_timeout)
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        self._task_group.start_soon(self._receive_loop, self._ws)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool | None:
        await self.close()
        self._task_group.cancel_scope.cancel()
        return await self._task_group.__aexit__(exc_type, exc_val, exc_tb)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def register_handler(self, message_type: str, handler: FrameHandlerFnT) -> None:
        self.handlers[message_type] = handler

    async def send(self, message: WebSocketMessage) -> None:
        if self._ws is None:
            raise RuntimeError("WebSocketClient is not connected")
        try:
            await self._ws.send(_encode(message))
        except ConnectionClosed as exc:
            raise McpError.of(types.INTERNAL_ERROR, "connection closed") from exc

    async def send_and_wait(
        self,
        message: WebSocketMessage,
        response_type: str | None = None,
        timeout: float = 10.0,
    ) -> WebSocketMessage:
        """Send ``message`` and return the first ``response_type`` frame that answers it.

        ``response_type`` defaults to ``<type>Response``. When ``message`` has an
        id, only frames with the same id match, and an error frame with that id
        raises McpError.

        Raises:
            TimeoutError: If no matching frame arrives within ``timeout`` seconds
        """
        response_type = response_type or f"{message.type}{RESPONSE_SUFFIX}"

        def matches(frame: WebSocketMessage) -> bool:
            if message.id is not None and frame.id != message.id:
                return False
            return frame.type == response_type or (message.id is not None and frame.type == ERROR_TYPE)

        send_stream, receive_stream = anyio.create_memory_object_stream[WebSocketMessage](1)
        waiter = (matches, send_stream)
        self._waiters.append(waiter)
        try:
            await self.send(message)
            with anyio.fail_after(timeout):
                frame = await receive_stream.receive()
        except anyio.EndOfStream:
            raise McpError.of(types.INTERNAL_ERROR, "connection closed") from None
        finally:
            self._waiters.remove(waiter)
            send_stream.close()
            receive_stream.close()

        if frame.type == ERROR_TYPE and frame.type != response_type:
            raise McpError(types.ErrorData.model_validate(frame.payload))
        return frame

    async def _receive_loop(self, ws: ClientConnection) -> None:
        try:
            async for raw in ws:
                try:
                    frame = WebSocketMessage.model_validate_json(raw)
                except ValidationError:
                    logger.warning("Ignoring invalid frame from server")
                    continue

                for matches, send_stream in list(self._waiters):
                    if matches(frame):
                        try:
                            send_stream.send_nowait(frame)
                        except (anyio.WouldBlock, anyio.ClosedResourceError, anyio.BrokenResourceError):
                            pass

                if handler := self.handlers.get(frame.type):
                    try:
                        await handler(frame)
                    except Exception:
                        logger.exception("Handler for %s frames failed", frame.type)
        except ConnectionClosed:
            pass
        finally:
            if ws.close_code is not None:
                self.close_code = ws.close_code
                self.close_reason = ws.close_reason
            for _, send_stream in self._waiters:
                send_stream.close()
            self._closed.set()
            logger.debug("WebSocket closed (code=%s reason=%s)", self.close_code, self.close_reason)

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
