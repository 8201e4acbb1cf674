"""
Client transports for stdio: one JSON envelope per line in each direction.

``stdio_client`` spawns the server as a child process; ``stdio_streams`` wraps
an already-open pair of async text files.
"""

import logging
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Literal, TextIO

import anyio
import anyio.lowlevel
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from anyio.streams.text import TextReceiveStream
from pydantic import BaseModel, Field

import mcpkit.types as types
from mcpkit.shared.message import SessionMessage

logger = logging.getLogger(__name__)

# Environment variables to inherit by default
DEFAULT_INHERITED_ENV_VARS = ["HOME", "LOGNAME", "PATH", "SHELL", "TERM", "USER"]

# Timeout for process termination before falling back to force kill
PROCESS_TERMINATION_TIMEOUT = 2.0

Streams = tuple[MemoryObjectReceiveStream[SessionMessage | Exception], MemoryObjectSendStream[SessionMessage]]


def get_default_environment() -> dict[str, str]:
    """Returns a default environment object including only environment variables deemed
    safe to inherit.
    """
    env: dict[str, str] = {}
    for key in DEFAULT_INHERITED_ENV_VARS:
        value = os.environ.get(key)
        if value is None or value.startswith("()"):
            # Skip functions, which are a security risk
            continue
        env[key] = value
    return env


class StdioServerParameters(BaseModel):
    command: str
    """The executable to run to start the server."""

    args: list[str] = Field(default_factory=list)
    """Command line arguments to pass to the executable."""

    env: dict[str, str] | None = None
    """
    Extra environment for the process, on top of get_default_environment().
    """

    cwd: str | Path | None = None
    """The working directory to use when spawning the process."""

    encoding: str = "utf-8"

    encoding_error_handler: Literal["strict", "ignore", "replace"] = "strict"


async def _send_line(read_stream_writer: MemoryObjectSendStream[SessionMessage | Exception], line: str) -> None:
    if not line.strip():
        return
    try:
        message = types.parse_message(line)
    except Exception as exc:
        logger.warning("Failed to parse message from server: %s", exc)
        await read_stream_writer.send(exc)
        return
    await read_stream_writer.send(SessionMessage(message))


@asynccontextmanager
async def stdio_client(server: StdioServerParameters, errlog: TextIO = sys.stderr) -> AsyncIterator[Streams]:
    """Client transport for stdio: this will connect to a server by spawning a
    process and communicating with it over stdin/stdout.
    """
    read_stream_writer, read_stream = anyio.create_memory_object_stream[SessionMessage | Exception](0)
    write_stream, write_stream_reader = anyio.create_memory_object_stream[SessionMessage](0)

    try:
        process = await anyio.open_process(
            [server.command, *server.args],
            env={**get_default_environment(), **(server.env or {})},
            stderr=errlog,
            cwd=server.cwd,
            start_new_session=True,
        )
    except OSError:
        # Clean up streams if process creation fails
        for stream in (read_stream, write_stream, read_stream_writer, write_stream_reader):
            stream.close()
        raise

    async def stdout_reader():
        assert process.stdout, "Opened process is missing stdout"

        try:
            async with read_stream_writer:
                buffer = ""
                async for chunk in TextReceiveStream(
                    process.stdout,
                    encoding=server.encoding,
                    errors=server.encoding_error_handler,
                ):
                    lines = (buffer + chunk).split("\n")
                    buffer = lines.pop()
                    for line in lines:
                        await _send_line(read_stream_writer, line)
                if buffer:
                    await _send_line(read_stream_writer, buffer)
        except anyio.ClosedResourceError:
            await anyio.lowlevel.checkpoint()

    async def stdin_writer():
        assert process.stdin, "Opened process is missing stdin"

        try:
            async with write_stream_reader:
                async for session_message in write_stream_reader:
                    line = types.dump_message(session_message.message) + "\n"
                    data = line.encode(encoding=server.encoding, errors=server.encoding_error_handler)
                    await process.stdin.send(data)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            await anyio.lowlevel.checkpoint()

    async with anyio.create_task_group() as tg, process:
        tg.start_soon(stdout_reader)
        tg.start_soon(stdin_writer)
        try:
            yield read_stream, write_stream
        finally:
            # Closing stdin asks the server to exit; terminate it if it does not.
            if process.stdin:
                try:
                    await process.stdin.aclose()
                except (anyio.ClosedResourceError, anyio.BrokenResourceError, OSError):
                    pass

            try:
                with anyio.fail_after(PROCESS_TERMINATION_TIMEOUT):
                    await process.wait()
            except TimeoutError:
                logger.warning("Server process did not exit, terminating it")
                process.terminate()
                with anyio.move_on_after(PROCESS_TERMINATION_TIMEOUT) as scope:
                    await process.wait()
                if scope.cancelled_caught:
                    process.kill()
            except ProcessLookupError:
                pass
            tg.cancel_scope.cancel()
            read_stream.close()
            write_stream.close()


@asynccontextmanager
async def stdio_streams(reader: anyio.AsyncFile[str], writer: anyio.AsyncFile[str]) -> AsyncIterator[Streams]:
    """Client transport over an existing pair of async text files.

    The reader reaching EOF ends the incoming stream, which the session treats
    as the connection closing.
    """
    read_stream_writer, read_stream = anyio.create_memory_object_stream[SessionMessage | Exception](0)
    write_stream, write_stream_reader = anyio.create_memory_object_stream[SessionMessage](0)

    async def line_reader():
        try:
            async with read_stream_writer:
                async for line in reader:
                    await _send_line(read_stream_writer, line)
        except anyio.ClosedResourceError:
            await anyio.lowlevel.checkpoint()

    async def line_writer():
        try:
            async with write_stream_reader:
                async for session_message in write_stream_reader:
                    await writer.write(types.dump_message(session_message.message) + "\n")
                    await writer.flush()
        except anyio.ClosedResourceError:
            await anyio.lowlevel.checkpoint()

    async with anyio.create_task_group() as tg:
        tg.start_soon(line_reader)
        tg.start_soon(line_writer)
        try:
            yield read_stream, write_stream
        finally:
            tg.cancel_scope.cancel()
            read_stream.close()
            write_stream.close()
