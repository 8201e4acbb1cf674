"""Common test utilities for mcpkit tests."""

import multiprocessing
import socket
import time
from collections.abc import AsyncGenerator, Callable, Generator
from contextlib import asynccontextmanager, contextmanager

import anyio
import uvicorn
from starlette.types import ASGIApp


def wait_for_server(port: int, timeout: float = 5.0) -> None:
    """Wait for server to be ready to accept connections.

    Polls the server port until it accepts connections or timeout is reached.

    Raises:
        TimeoutError: If server doesn't start within the timeout period
    """
    start_time = time.time()
    while time.time() - start_time < timeout:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.settimeout(0.1)
                s.connect(("127.0.0.1", port))
                return
        except (ConnectionRefusedError, OSError):
            time.sleep(0.01)
    raise TimeoutError(f"Server on port {port} did not start within {timeout} seconds")


def run_uvicorn(app_factory: Callable[[], ASGIApp], port: int) -> None:
    server = uvicorn.Server(config=uvicorn.Config(app=app_factory(), host="127.0.0.1", port=port, log_level="error"))
    server.run()


@contextmanager
def running_server(app_factory: Callable[[], ASGIApp], port: int) -> Generator[str, None, None]:
    """Serve ``app_factory()`` with uvicorn in a child process; yields the base URL.

    ``app_factory`` must be a module-level function so it can be pickled.
    """
    proc = multiprocessing.Process(target=run_uvicorn, args=(app_factory, port), daemon=True)
    proc.start()
    try:
        wait_for_server(port)
        yield f"127.0.0.1:{port}"
    finally:
        proc.kill()
        proc.join(timeout=2)


@asynccontextmanager
async def serving(app: ASGIApp, port: int) -> AsyncGenerator[str, None]:
    """Run ``app`` on uvicorn inside the current event loop; yields ``host:port``."""
    server = uvicorn.Server(uvicorn.Config(app=app, host="127.0.0.1", port=port, log_level="error"))
    async with anyio.create_task_group() as tg:
        tg.start_soon(server.serve)
        with anyio.fail_after(5):
            while not server.started:
                await anyio.sleep(0.01)
        try:
            yield f"127.0.0.1:{port}"
        finally:
            server.should_exit = True
