import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import anyio
import httpx
from anyio.abc import TaskStatus
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from httpx_sse import aconnect_sse

import mcpkit.types as types
from mcpkit.client.http import error_from_response, validate_url
from mcpkit.shared._httpx_utils import (
    DEFAULT_SSE_READ_TIMEOUT,
    DEFAULT_TIMEOUT,
    McpHttpClientFactory,
    create_mcp_http_client,
)
from mcpkit.shared.message import SessionMessage

logger = logging.getLogger(__name__)

SESSION_ID_HEADER = "X-Session-ID"
STREAM_ID_HEADER = "X-Stream-ID"
CHUNK_EVENTS = frozenset(chunk_type.value for chunk_type in types.ChunkType)

Streams = tuple[MemoryObjectReceiveStream[SessionMessage | Exception], MemoryObjectSendStream[SessionMessage]]
ChunkHandlerFnT = Callable[[types.StreamChunk], Awaitable[None]]


@asynccontextmanager
async def sse_client(
    url: str,
    headers: dict[str, Any] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    sse_read_timeout: float = DEFAULT_SSE_READ_TIMEOUT,
    session_id: str | None = None,
    last_event_id: str | None = None,
    stream_id: str | None = None,
    chunk_handler: ChunkHandlerFnT | None = None,
    httpx_client_factory: McpHttpClientFactory = create_mcp_http_client,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[Streams]:
    """
    Client transport for the streamable HTTP server.

    The event stream is opened with GET before anything is sent; request
    envelopes are then POSTed to the same URL and their responses arrive as
    ``message`` events. Streamed chunk events are passed to ``chunk_handler``.

    `sse_read_timeout` determines how long (in seconds) the client will wait for a new
    event before disconnecting. All other HTTP operations are controlled by `timeout`.

    Args:
        url: Streamable endpoint URL
        headers: Optional HTTP headers
        session_id: Sent as ``X-Session-ID`` on every POST, for servers that gate writes
        last_event_id: Resume after this event id
        stream_id: Names this client's event stream so the server sends it only the
            responses and chunks of its own requests; a random id is used when omitted
    """
    url = validate_url(url)
    read_stream_writer, read_stream = anyio.create_memory_object_stream[SessionMessage | Exception](0)
    write_stream, write_stream_reader = anyio.create_memory_object_stream[SessionMessage](0)

    stream_id = stream_id or uuid.uuid4().hex
    post_headers: dict[str, str] = {STREAM_ID_HEADER: stream_id}
    if session_id is not None:
        post_headers[SESSION_ID_HEADER] = session_id

    get_headers = {STREAM_ID_HEADER: stream_id}
    if last_event_id:
        get_headers["Last-Event-ID"] = last_event_id

    async with anyio.create_task_group() as tg:
        try:
            logger.info("Connecting to SSE endpoint: %s", url)
            async with httpx_client_factory(
                headers=headers, timeout=httpx.Timeout(timeout), transport=transport
            ) as client:
                async with aconnect_sse(
                    client,
                    "GET",
                    url,
                    headers=get_headers,
                    timeout=httpx.Timeout(timeout, read=sse_read_timeout),
                ) as event_source:
                    if event_source.response.is_error:
                        await event_source.response.aread()
                        error = error_from_response(event_source.response)
                        raise httpx.HTTPStatusError(
                            f"SSE connection failed: {error.code} {error.message}",
                            request=event_source.response.request,
                            response=event_source.response,
                        )
                    logger.debug("SSE connection established")

                    async def sse_reader(task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED):
                        task_status.started()
                        try:
                            async for sse in event_source.aiter_sse():
                                logger.debug("Received SSE event: %s", sse.event)
                                if sse.event == "message":
                                    try:
                                        message = types.parse_message(sse.data)
                                    except Exception as exc:
                                        logger.debug("Skipping non-envelope event %s: %s", sse.id, exc)
                                        continue
                                    if isinstance(message, types.Request):
                                        continue
                                    await read_stream_writer.send(SessionMessage(message))
                                elif sse.event in CHUNK_EVENTS:
                                    if chunk_handler is not None:
                                        await chunk_handler(types.StreamChunk.from_json(sse.data))
                                else:
                                    logger.warning("Unknown SSE event: %s", sse.event)
                        except httpx.HTTPError as exc:
                            logger.error("Error in sse_reader: %s", exc)
                            await read_stream_writer.send(exc)
                        finally:
                            read_stream_writer.close()

                    async def post(request: types.Request) -> None:
                        try:
                            response = await client.post(url, json=request.to_wire(), headers=post_headers)
                        except httpx.HTTPError as exc:
                            error = types.ErrorData(code=types.SERVICE_UNAVAILABLE, message=f"request failed: {exc}")
                        else:
                            if not response.is_error:
                                if new_session := response.headers.get(SESSION_ID_HEADER):
                                    post_headers.setdefault(SESSION_ID_HEADER, new_session)
                                logger.debug("Client message sent: %d", response.status_code)
                                return
                            error = error_from_response(response)

                        # The answer will never arrive on the stream, so fail the request here.
                        logger.warning("POST for %s failed: %s", request.method, error.message)
                        if request.id is not None and not request.is_notification:
                            try:
                                reply = types.ErrorResponse(id=request.id, error=error)
                                await read_stream_writer.send(SessionMessage(reply))
                            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                                pass

                    async def post_writer():
                        try:
                            async with write_stream_reader:
                                async for session_message in write_stream_reader:
                                    message = session_message.message
                                    if not isinstance(message, types.Request):
                                        logger.warning("Cannot send %s over SSE", type(message).__name__)
                                        continue
                                    # initialize must finish first so later requests carry its session id
                                    if message.method == types.INITIALIZE:
                                        await post(message)
                                    else:
                                        tg.start_soon(post, message)
                        except anyio.ClosedResourceError:
                            logger.debug("Write stream closed")

                    await tg.start(sse_reader)
                    tg.start_soon(post_writer)

                    try:
                        yield read_stream, write_stream
                    finally:
                        tg.cancel_scope.cancel()
        finally:
            read_stream_writer.close()
            write_stream.close()
