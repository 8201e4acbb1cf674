"""
Line-delimited JSON over the process's standard streams.

The client writes one envelope per line to our stdin and reads our answers from
stdout, one per line. Blank lines are ignored; a line that is not an envelope
is handed to the server as an exception so it can answer with a parse error.

Example:
    ```python
    async def main():
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream)

    anyio.run(main)
    ```
"""

import logging
import sys
from contextlib import asynccontextmanager
from io import TextIOWrapper
from typing import BinaryIO

import anyio
import anyio.lowlevel
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from mcpkit import types
from mcpkit.shared.message import SessionMessage

logger = logging.getLogger(__name__)


class _KeepOpenTextIOWrapper(TextIOWrapper):
    """UTF-8 view of a process handle; closing it only flushes."""

    def close(self) -> None:
        if not self.closed and self.writable():
            self.flush()


def _process_stream(binary_stream: BinaryIO) -> anyio.AsyncFile[str]:
    return anyio.wrap_file(_KeepOpenTextIOWrapper(binary_stream, encoding="utf-8"))


def _decode_line(line: str) -> SessionMessage | Exception:
    try:
        return SessionMessage(types.parse_message(line))
    except Exception as exc:
        return exc


@asynccontextmanager
async def stdio_server(stdin: anyio.AsyncFile[str] | None = None, stdout: anyio.AsyncFile[str] | None = None):
    """Yield ``(read_stream, write_stream)`` bound to stdin and stdout.

    ``stdin``/``stdout`` default to the process handles, which stay open after the
    transport exits. Outgoing envelopes are written by a single task, so lines
    from concurrent handlers never mix. The read stream ends at EOF.
    """
    stdin = stdin or _process_stream(sys.stdin.buffer)
    stdout = stdout or _process_stream(sys.stdout.buffer)

    read_stream: MemoryObjectReceiveStream[SessionMessage | Exception]
    read_stream_writer: MemoryObjectSendStream[SessionMessage | Exception]
    write_stream: MemoryObjectSendStream[SessionMessage]
    write_stream_reader: MemoryObjectReceiveStream[SessionMessage]

    read_stream_writer, read_stream = anyio.create_memory_object_stream(0)
    write_stream, write_stream_reader = anyio.create_memory_object_stream(0)

    async def read_lines():
        try:
            async with read_stream_writer:
                async for line in stdin:
                    if line.strip():
                        await read_stream_writer.send(_decode_line(line))
            logger.info("stdin reached EOF")
        except anyio.ClosedResourceError:
            await anyio.lowlevel.checkpoint()

    async def write_lines():
        try:
            async with write_stream_reader:
                async for session_message in write_stream_reader:
                    await stdout.write(types.dump_message(session_message.message) + "\n")
                    await stdout.flush()
        except anyio.ClosedResourceError:
            await anyio.lowlevel.checkpoint()

    async with anyio.create_task_group() as tg:
        tg.start_soon(read_lines)
        tg.start_soon(write_lines)
        yield read_stream, write_stream
