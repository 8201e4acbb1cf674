import itertools
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from types import TracebackType
from typing import Any

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from typing_extensions import Self

import mcpkit.types as types
from mcpkit.server.lowlevel.helper_types import ReadResourceContents
from mcpkit.shared.exceptions import McpError
from mcpkit.shared.message import SessionMessage

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_INFO = types.Implementation(name="mcpkit", version="0.1.0")

MessageHandlerFnT = Callable[[SessionMessage | Exception], Awaitable[None]]

Reply = types.Response | types.ErrorResponse | None


async def _default_message_handler(message: SessionMessage | Exception) -> None:
    if isinstance(message, Exception):
        logger.warning("Transport error: %s", message)
    else:
        logger.debug("Ignoring unsolicited message: %s", message.message)


class ClientSession:
    """
    Client side of an MCP connection on top of read/write streams.

    Requests get increasing integer ids and their responses are matched back by
    id, so any number of requests may be outstanding at once. The session is an
    async context manager that processes incoming messages while entered.

    When the incoming stream ends, a pending ``initialize`` fails with
    ``McpError(500, "connection closed")`` and every other pending request
    resolves to ``None``.
    """

    def __init__(
        self,
        read_stream: MemoryObjectReceiveStream[SessionMessage | Exception],
        write_stream: MemoryObjectSendStream[SessionMessage],
        # If none, reading will never time out
        read_timeout_seconds: timedelta | None = None,
        client_info: types.Implementation | None = None,
        capabilities: types.ClientCapabilities | None = None,
        message_handler: MessageHandlerFnT | None = None,
    ) -> None:
        self._read_stream = read_stream
        self._write_stream = write_stream
        self._session_read_timeout_seconds = read_timeout_seconds
        self._client_info = client_info or DEFAULT_CLIENT_INFO
        self._capabilities = capabilities or types.ClientCapabilities()
        self._message_handler = message_handler or _default_message_handler
        self._request_ids = itertools.count(1)
        self._response_streams: dict[
            types.RequestId,
            tuple[str, MemoryObjectSendStream[Reply], MemoryObjectReceiveStream[Reply]],
        ] = {}
        self._closed = False
        self.server_info: types.InitializeResult | None = None

    async def __aenter__(self) -> Self:
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        self._task_group.start_soon(self._receive_loop)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool | None:
        # Exiting must not wait for the peer, so the receive loop is cancelled.
        self._task_group.cancel_scope.cancel()
        return await self._task_group.__aexit__(exc_type, exc_val, exc_tb)

    async def start_request(self, method: str, params: Any = None) -> types.RequestId:
        """Send a request without waiting for its response; pair with ``join_request``."""
        if self._closed:
            raise McpError.of(types.INTERNAL_ERROR, "connection closed")

        request_id = next(self._request_ids)
        send_stream, receive_stream = anyio.create_memory_object_stream[Reply](1)
        self._response_streams[request_id] = (method, send_stream, receive_stream)

        request = types.Request(id=request_id, method=method, params=params)
        try:
            await self._write_stream.send(SessionMessage(request))
        except Exception:
            self._close_request(request_id)
            raise
        return request_id

    async def join_request(
        self,
        request_id: types.RequestId,
        request_read_timeout_seconds: timedelta | None = None,
    ) -> Any:
        """Wait for the response to a request started with ``start_request``.

        Raises:
            McpError: the error the server answered with, 504 when the read
                timeout passes, 499 when the request was cancelled locally.
        """
        entry = self._response_streams.get(request_id)
        if entry is None:
            raise McpError.of(types.BAD_REQUEST, f"Unknown request {request_id}")
        method, _, receive_stream = entry

        # request read timeout takes precedence over session read timeout
        timeout = None
        if request_read_timeout_seconds is not None:
            timeout = request_read_timeout_seconds.total_seconds()
        elif self._session_read_timeout_seconds is not None:
            timeout = self._session_read_timeout_seconds.total_seconds()

        try:
            with anyio.fail_after(timeout):
                reply = await receive_stream.receive()
        except TimeoutError:
            logger.warning("Request %s (%s) timed out after %ss", request_id, method, timeout)
            await self._send_cancel(request_id)
            raise McpError.of(
                types.GATEWAY_TIMEOUT,
                f"Timed out while waiting for response to {method}. Waited {timeout} seconds.",
            ) from None
        except anyio.EndOfStream:
            reply = None
        finally:
            self._close_request(request_id)

        if isinstance(reply, types.ErrorResponse):
            raise McpError(reply.error)
        return reply.result if reply is not None else None

    async def send_request(
        self,
        method: str,
        params: Any = None,
        request_read_timeout_seconds: timedelta | None = None,
    ) -> Any:
        """
        Sends a request and waits for its result. Raises an McpError if the
        response contains an error.

        Do not use this method to emit notifications! Use send_notification()
        instead.
        """
        request_id = await self.start_request(method, params)
        return await self.join_request(request_id, request_read_timeout_seconds)

    async def send_notification(self, method: str, params: Any = None) -> None:
        """
        Emits a notification, which is a one-way message that does not expect
        a response.
        """
        await self._write_stream.send(SessionMessage(types.Request(method=method, params=params)))

    def _close_request(self, request_id: types.RequestId) -> None:
        entry = self._response_streams.pop(request_id, None)
        if entry is not None:
            _, send_stream, receive_stream = entry
            send_stream.close()
            receive_stream.close()

    def _deliver(self, request_id: types.RequestId, reply: Reply) -> bool:
        entry = self._response_streams.get(request_id)
        if entry is None:
            # ids may round-trip through JSON as a different type
            entry = next((e for rid, e in self._response_streams.items() if str(rid) == str(request_id)), None)
        if entry is None:
            return False
        try:
            entry[1].send_nowait(reply)
        except (anyio.WouldBlock, anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.debug("Dropping duplicate reply for request %s", request_id)
        return True

    async def _receive_loop(self) -> None:
        async with self._read_stream, self._write_stream:
            try:
                async for message in self._read_stream:
                    if isinstance(message, Exception):
                        await self._message_handler(message)
                        continue

                    match message.message:
                        case types.Response(id=request_id) | types.ErrorResponse(id=request_id) if (
                            request_id is not None
                        ):
                            if not self._deliver(request_id, message.message):
                                logger.warning("Received response with an unknown request ID: %s", request_id)
                        case _:
                            await self._message_handler(message)
            except anyio.ClosedResourceError:
                logger.debug("Read stream closed")
            finally:
                self._closed = True
                self._fail_pending()

    def _fail_pending(self) -> None:
        for request_id, (method, send_stream, _) in list(self._response_streams.items()):
            reply: Reply = None
            if method == types.INITIALIZE:
                reply = types.ErrorResponse(
                    id=request_id, error=types.ErrorData(code=types.INTERNAL_ERROR, message="connection closed")
                )
            try:
                send_stream.send_nowait(reply)
            except (anyio.WouldBlock, anyio.ClosedResourceError, anyio.BrokenResourceError):
                pass

    async def _send_cancel(self, request_id: types.RequestId) -> None:
        try:
            await self.send_notification(types.CANCEL, types.CancelParams(id=request_id).to_wire())
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.debug("Could not send cancel for %s, connection closed", request_id)

    async def initialize(self) -> types.InitializeResult:
        params = types.InitializeRequestParams(
            protocol_version=types.PROTOCOL_VERSION,
            client_info=self._client_info,
            capabilities=self._capabilities,
        )
        result = types.InitializeResult.model_validate(await self.send_request(types.INITIALIZE, params.to_wire()))

        if result.protocol_version != types.PROTOCOL_VERSION:
            logger.warning("Server answered with protocol version %s", result.protocol_version)

        await self.send_notification(types.INITIALIZED)
        self.server_info = result
        return result

    async def ping(self, timestamp: int | None = None) -> types.PingResult | None:
        """Send a ping request. Returns None if the connection closed before the answer."""
        result = await self.send_request(types.PING, types.PingParams(timestamp=timestamp).to_wire())
        return types.PingResult.model_validate(result) if result is not None else None

    async def cancel(self, request_id: types.RequestId) -> None:
        """Ask the server to abandon ``request_id`` and fail the local waiter."""
        await self._send_cancel(request_id)
        error = types.ErrorData(code=types.REQUEST_CANCELLED, message="request cancelled")
        self._deliver(request_id, types.ErrorResponse(id=request_id, error=error))

    async def list_tools(self) -> list[types.Tool]:
        return types.tool_list_adapter.validate_python(await self.send_request(types.LIST_TOOLS) or [])

    async def call_tool(
        self,
        name: str,
        args: dict[str, Any] | None = None,
        read_timeout_seconds: timedelta | None = None,
    ) -> Any:
        """Send a callTool request; returns the tool's JSON result as-is."""
        params = types.CallToolParams(name=name, args=args or {})
        return await self.send_request(types.CALL_TOOL, params.to_wire(), read_timeout_seconds)

    async def list_prompts(self) -> list[types.Prompt]:
        return types.prompt_list_adapter.validate_python(await self.send_request(types.LIST_PROMPTS) or [])

    async def get_prompt(self, name: str, args: dict[str, Any] | None = None) -> types.Prompt | None:
        params = types.GetPromptParams(name=name, args=args or {})
        result = await self.send_request(types.GET_PROMPT, params.to_wire())
        return types.Prompt.model_validate(result) if result is not None else None

    async def list_resources(self) -> list[types.Resource]:
        return types.resource_list_adapter.validate_python(await self.send_request(types.LIST_RESOURCES) or [])

    async def read_resource(self, uri: str) -> ReadResourceContents | None:
        result = await self.send_request(types.READ_RESOURCE, types.ReadResourceParams(uri=uri).to_wire())
        if result is None:
            return None
        return ReadResourceContents.from_result(types.ReadResourceResult.model_validate(result))

    async def list_resource_templates(self) -> list[types.ResourceTemplate]:
        result = await self.send_request(types.LIST_RESOURCE_TEMPLATES)
        return types.resource_template_list_adapter.validate_python(result or [])
