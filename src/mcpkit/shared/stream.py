"""Single-producer / single-consumer pipe of typed chunks for one request.

The handler writes ``data``, ``progress`` and ``error`` chunks and finishes with
``complete``; the transport reads them and frames each one for the wire.
"""

import json
import logging
from typing import Any

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from mcpkit.shared.exceptions import StreamClosedError, to_error_data
from mcpkit.types import ChunkType, Progress, StreamChunk

logger = logging.getLogger(__name__)


class StreamPipe:
    def __init__(self, max_buffer_size: int = 16):
        self._send: MemoryObjectSendStream[StreamChunk]
        self._receive: MemoryObjectReceiveStream[StreamChunk]
        self._send, self._receive = anyio.create_memory_object_stream[StreamChunk](max_buffer_size)
        self._write_lock = anyio.Lock()
        self._writer_closed = False
        self._reader_closed = False

    @property
    def closed(self) -> bool:
        return self._writer_closed

    async def write_chunk(self, chunk: StreamChunk) -> None:
        async with self._write_lock:
            if self._writer_closed:
                raise StreamClosedError()
            try:
                await self._send.send(chunk)
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                raise StreamClosedError() from None
            if chunk.type is ChunkType.COMPLETE:
                self._close_writer()

    async def write_data(self, data: Any) -> None:
        """Write a data chunk. ``bytes``/``str`` are taken as raw JSON text."""
        if isinstance(data, bytes):
            raw = data.decode()
        elif isinstance(data, str):
            raw = data
        else:
            raw = json.dumps(data, separators=(",", ":"))
        await self.write_chunk(StreamChunk(type=ChunkType.DATA, data=raw))

    async def write_progress(self, progress: Progress) -> None:
        await self.write_chunk(StreamChunk(type=ChunkType.PROGRESS, progress=progress))

    async def write_error(self, error: BaseException) -> None:
        await self.write_chunk(StreamChunk(type=ChunkType.ERROR, error=to_error_data(error)))

    async def write_complete(self) -> None:
        await self.write_chunk(StreamChunk(type=ChunkType.COMPLETE))

    async def read(self) -> StreamChunk:
        if self._reader_closed:
            raise StreamClosedError()
        try:
            return await self._receive.receive()
        except (anyio.EndOfStream, anyio.ClosedResourceError):
            raise StreamClosedError() from None

    def __aiter__(self) -> "StreamPipe":
        return self

    async def __anext__(self) -> StreamChunk:
        try:
            return await self.read()
        except StreamClosedError:
            raise StopAsyncIteration from None

    def close_writer(self) -> None:
        """Stop accepting writes. Chunks already buffered can still be read."""
        self._close_writer()

    def close(self) -> None:
        """Close both sides. Pending and future reads fail with ``stream closed``."""
        self._close_writer()
        if not self._reader_closed:
            self._reader_closed = True
            self._receive.close()

    def _close_writer(self) -> None:
        if not self._writer_closed:
            self._writer_closed = True
            # Closing the last send side wakes a blocked reader with EndOfStream.
            self._send.close()

    async def __aenter__(self) -> "StreamPipe":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()
