"""
SSE broadcaster

Fans events out to connected Server-Sent Events clients. Each client owns a
bounded memory stream; a client whose buffer is full when an event arrives is
disconnected rather than allowed to stall the broadcaster.

A client may connect with a stream id. Events addressed to a stream id reach
only the clients connected with it; unaddressed events reach everyone.

Example usage:
```
    stream = SseStream(max_clients=100)

    async def handle_get(request):
        return await stream.connect(request, stream_id=request.headers.get("x-stream-id"))

    await stream.broadcast(StoredEvent(id="evt-1", data='{"result": 1}'))
```
"""

import itertools
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from sse_starlette import EventSourceResponse, ServerSentEvent
from starlette.requests import Request

import mcpkit.types as types
from mcpkit.shared.exceptions import McpError

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
}

ReplayCallback = Callable[[], Awaitable[Sequence[types.StoredEvent]]]


def event_to_sse(event: types.StoredEvent, retry_ms: int | None = None) -> ServerSentEvent:
    return ServerSentEvent(data=event.data, event=event.type, id=event.id, retry=retry_ms)


def chunk_to_sse(chunk: types.StreamChunk) -> ServerSentEvent:
    """Frame a stream chunk as ``event: <type>`` / ``data: <json>``."""
    return ServerSentEvent(data=chunk.to_json(), event=chunk.type.value)


def is_addressed_to(event: types.StoredEvent, stream_id: str | None) -> bool:
    return event.stream_id is None or event.stream_id == stream_id


@dataclass
class _Client:
    stream_id: str | None
    send_stream: MemoryObjectSendStream[ServerSentEvent]


class SseStream:
    def __init__(self, max_clients: int = 100, buffer_size: int = 256, retry_ms: int | None = None):
        if max_clients <= 0 or buffer_size <= 0:
            raise ValueError("max_clients and buffer_size must be positive")
        self.max_clients = max_clients
        self.buffer_size = buffer_size
        self.retry_ms = retry_ms
        self._clients: dict[int, _Client] = {}
        self._ids = itertools.count(1)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def _add_client(self, stream_id: str | None = None) -> tuple[int, MemoryObjectReceiveStream[ServerSentEvent]]:
        if len(self._clients) >= self.max_clients:
            raise McpError.of(types.SERVICE_UNAVAILABLE, "Too many clients")
        client_id = next(self._ids)
        send_stream, receive_stream = anyio.create_memory_object_stream[ServerSentEvent](self.buffer_size)
        self._clients[client_id] = _Client(stream_id, send_stream)
        logger.debug("SSE client %d connected (%d total)", client_id, len(self._clients))
        return client_id, receive_stream

    def _remove_client(self, client_id: int) -> None:
        client = self._clients.pop(client_id, None)
        if client is not None:
            client.send_stream.close()
            logger.debug("SSE client %d disconnected (%d total)", client_id, len(self._clients))

    async def connect(
        self,
        request: Request | None = None,
        replay: ReplayCallback | None = None,
        stream_id: str | None = None,
    ) -> EventSourceResponse:
        """Register a client and build its event stream response.

        The client is registered before ``replay`` runs, so no event broadcast in
        between is lost; events delivered by both paths are sent once. Replayed
        events addressed to other streams are skipped.

        Raises:
            McpError: 503 when ``max_clients`` are already connected. Errors raised
                by ``replay`` propagate after the client is unregistered.
        """
        client_id, receive_stream = self._add_client(stream_id)
        try:
            replayed = list(await replay()) if replay is not None else []
        except BaseException:
            self._remove_client(client_id)
            receive_stream.close()
            raise
        replayed = [event for event in replayed if is_addressed_to(event, stream_id)]

        if replayed:
            logger.info("Replaying %d events to SSE client %d", len(replayed), client_id)

        async def event_generator() -> AsyncIterator[ServerSentEvent]:
            seen = {event.id for event in replayed}
            try:
                for event in replayed:
                    yield event_to_sse(event, self.retry_ms)
                async with receive_stream:
                    async for sse in receive_stream:
                        if sse.id is not None and sse.id in seen:
                            continue
                        yield sse
            finally:
                self._remove_client(client_id)

        return EventSourceResponse(event_generator(), headers=SSE_HEADERS)

    def _fan_out(self, sse: ServerSentEvent, stream_id: str | None = None) -> int:
        delivered = 0
        for client_id, client in list(self._clients.items()):
            if stream_id is not None and client.stream_id != stream_id:
                continue
            try:
                client.send_stream.send_nowait(sse)
                delivered += 1
            except anyio.WouldBlock:
                logger.warning("SSE client %d is too slow, disconnecting", client_id)
                self._remove_client(client_id)
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                self._remove_client(client_id)
        return delivered

    async def broadcast(self, event: types.StoredEvent) -> int:
        """Send ``event`` to the clients it is addressed to; returns how many received it."""
        return self._fan_out(event_to_sse(event, self.retry_ms), event.stream_id)

    async def broadcast_data(self, data: str, event: str = "message", event_id: str | None = None) -> int:
        return self._fan_out(ServerSentEvent(data=data, event=event, id=event_id, retry=self.retry_ms))

    async def broadcast_chunk(self, chunk: types.StreamChunk, stream_id: str | None = None) -> int:
        return self._fan_out(chunk_to_sse(chunk), stream_id)

    def close_all(self) -> None:
        for client_id in list(self._clients):
            self._remove_client(client_id)
