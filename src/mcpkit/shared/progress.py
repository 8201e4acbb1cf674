"""Progress tracking for long-running requests.

A handler obtains a ``ProgressTracker`` from its request context and moves it
through ``start`` -> ``update``* -> ``complete`` | ``fail``. Any number of
subscribers can watch the snapshots; emission never waits on them.

Example:
    ```python
    @server.call_tool()
    async def handle_call_tool(name: str, args: dict[str, Any]) -> Any:
        with progress(server.request_context.progress, "indexing") as tracker:
            for i, chunk in enumerate(chunks):
                await index(chunk)
                tracker.update(100 * (i + 1) / len(chunks), f"chunk {i}")
    ```
"""

import logging
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from mcpkit.shared.exceptions import to_error_data
from mcpkit.types import Progress, ProgressState

logger = logging.getLogger(__name__)

SUBSCRIBER_BUFFER_SIZE = 10


class ProgressTracker:
    def __init__(self, subscriber_buffer_size: int = SUBSCRIBER_BUFFER_SIZE):
        self._buffer_size = subscriber_buffer_size
        self._current: Progress | None = None
        self._subscribers: dict[MemoryObjectReceiveStream[Progress], MemoryObjectSendStream[Progress]] = {}

    def current(self) -> Progress | None:
        """Return the latest snapshot, or None before ``start``."""
        return self._current

    def start(self, message: str = "") -> Progress:
        if self._current is not None and not self._current.state.terminal:
            raise RuntimeError("progress tracking already started")
        return self._emit(Progress(id=str(uuid.uuid4()), state=ProgressState.STARTED, message=message, percentage=0))

    def update(self, percentage: float, message: str = "", details: dict[str, Any] | None = None) -> Progress:
        current = self._require_active()
        if not 0 <= percentage <= 100:
            raise ValueError("percentage must be between 0 and 100")
        return self._emit(
            Progress(
                id=current.id,
                state=ProgressState.IN_PROGRESS,
                message=message,
                percentage=percentage,
                details=details,
            )
        )

    def complete(self, message: str = "") -> Progress:
        current = self._require_active()
        return self._emit(Progress(id=current.id, state=ProgressState.COMPLETED, message=message, percentage=100))

    def fail(self, error: BaseException | str) -> Progress:
        current = self._require_active()
        error_data = to_error_data(RuntimeError(error) if isinstance(error, str) else error)
        return self._emit(
            Progress(
                id=current.id,
                state=ProgressState.FAILED,
                message=error_data.message,
                percentage=current.percentage,
                error=error_data,
            )
        )

    def subscribe(self) -> MemoryObjectReceiveStream[Progress]:
        """Return a stream of snapshots in emission order.

        A subscriber joining late receives the current snapshot first. The stream
        ends after the terminal snapshot, or early if the subscriber falls behind.
        """
        send_stream, receive_stream = anyio.create_memory_object_stream[Progress](self._buffer_size)
        if self._current is not None:
            send_stream.send_nowait(self._current)
            if self._current.state.terminal:
                send_stream.close()
                return receive_stream
        self._subscribers[receive_stream] = send_stream
        return receive_stream

    def unsubscribe(self, stream: MemoryObjectReceiveStream[Progress]) -> None:
        send_stream = self._subscribers.pop(stream, None)
        if send_stream is not None:
            send_stream.close()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _require_active(self) -> Progress:
        if self._current is None:
            raise RuntimeError("progress tracking not started")
        if self._current.state.terminal:
            raise RuntimeError(f"progress already {self._current.state.value}")
        return self._current

    def _emit(self, snapshot: Progress) -> Progress:
        self._current = snapshot
        for receive_stream, send_stream in list(self._subscribers.items()):
            try:
                send_stream.send_nowait(snapshot)
            except anyio.WouldBlock:
                logger.warning("Dropping slow progress subscriber for %s", snapshot.id)
                self._subscribers.pop(receive_stream, None)
                send_stream.close()
            except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                self._subscribers.pop(receive_stream, None)
                send_stream.close()

        if snapshot.state.terminal:
            for send_stream in self._subscribers.values():
                send_stream.close()
            self._subscribers.clear()
        return snapshot


@contextmanager
def progress(tracker: ProgressTracker, message: str = "") -> Generator[ProgressTracker, None, None]:
    """Start the tracker, complete it on normal exit and fail it on error."""
    tracker.start(message)
    try:
        yield tracker
    except BaseException as exc:
        current = tracker.current()
        if current is not None and not current.state.terminal:
            tracker.fail(exc)
        raise
    else:
        current = tracker.current()
        if current is not None and not current.state.terminal:
            tracker.complete()
