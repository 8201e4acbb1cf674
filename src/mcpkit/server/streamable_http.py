"""
Streamable HTTP Server Transport Module

This module implements the hybrid HTTP transport: one URL that accepts

- GET: subscribe to the event stream (Server-Sent Events). A ``Last-Event-ID``
  header replays every stored event newer than that id before live events.
- POST: publish an event. When a ``Server`` is attached, request envelopes are
  dispatched and the response envelope is what gets published.
- DELETE: close every live stream.

Anything else answers 405.

Clients that send an ``X-Stream-ID`` header on GET and POST get the responses
and stream chunks of their own requests on their own stream only.
"""

import logging
import time
from functools import partial

import anyio
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

import mcpkit.types as types
from mcpkit.server.event_store import EventStore
from mcpkit.server.http import DEFAULT_MAX_BODY_BYTES, decode_json, error_response, read_request_body
from mcpkit.server.lowlevel.server import Server
from mcpkit.server.middleware import build_middleware
from mcpkit.server.session import ServerSession
from mcpkit.server.settings import Settings
from mcpkit.server.sse import SseStream
from mcpkit.shared.exceptions import McpError
from mcpkit.shared.stream import StreamPipe

logger = logging.getLogger(__name__)

# Header names
SESSION_ID_HEADER = "x-session-id"
STREAM_ID_HEADER = "x-stream-id"
LAST_EVENT_ID_HEADER = "last-event-id"

ALLOWED_METHODS = "GET, POST, DELETE"


class StreamableHTTPTransport:
    """
    HTTP server transport with event streaming and resumability support.

    Write gating: when ``session_id`` is set, POST and DELETE must carry a
    matching ``X-Session-ID`` header.
    """

    def __init__(
        self,
        server: Server | None = None,
        *,
        event_store: EventStore | None = None,
        stream: SseStream | None = None,
        session_id: str | None = None,
        json_response: bool = False,
        max_body_bytes: int | None = DEFAULT_MAX_BODY_BYTES,
    ) -> None:
        """
        Args:
            server: Server whose handlers answer POSTed request envelopes. Without
                one, POST bodies are published as-is.
            event_store: Optional store that keeps every published event so
                clients can resume with ``Last-Event-ID``.
            stream: The broadcaster live events go through.
            session_id: When set, required in ``X-Session-ID`` for POST and DELETE.
            json_response: If True, POST answers ``{"status": "ok", "id": ...}``
                instead of 202 Accepted.
            max_body_bytes: Cap on POST body size.
        """
        self.server = server
        self.event_store = event_store
        self.stream = stream or SseStream()
        self.session_id = session_id
        self.json_response = json_response
        self.max_body_bytes = max_body_bytes
        self._last_event_ns = 0

    def next_event_id(self) -> str:
        # Strictly increasing even when the clock does not move between calls.
        self._last_event_ns = max(time.monotonic_ns(), self._last_event_ns + 1)
        return f"evt-{self._last_event_ns}"

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Application entry point that handles all HTTP requests."""
        request = Request(scope, receive)
        match request.method:
            case "GET":
                response = await self._handle_get_request(request)
            case "POST":
                response = await self._handle_post_request(request)
            case "DELETE":
                response = await self._handle_delete_request(request)
            case _:
                response = self._method_not_allowed()
        await response(scope, receive, send)

    def _method_not_allowed(self) -> Response:
        response = error_response(types.ErrorData(code=types.METHOD_NOT_ALLOWED, message="Method not allowed"))
        response.headers["Allow"] = ALLOWED_METHODS
        return response

    def _validate_session(self, request: Request) -> bool:
        if self.session_id is None:
            return True
        return request.headers.get(SESSION_ID_HEADER) == self.session_id

    async def _handle_get_request(self, request: Request) -> Response:
        last_event_id = request.headers.get(LAST_EVENT_ID_HEADER)

        replay = None
        if last_event_id and self.event_store is not None:
            replay = partial(self.event_store.get_events, since=last_event_id)

        stream_id = request.headers.get(STREAM_ID_HEADER)
        try:
            return await self.stream.connect(request, replay=replay, stream_id=stream_id)
        except McpError as err:
            if err.code == types.SERVICE_UNAVAILABLE:
                return error_response(err.error)
            logger.warning("Failed to replay events after %s: %s", last_event_id, err)
            return error_response(types.ErrorData(code=types.INTERNAL_ERROR, message="Failed to replay events"))

    async def _handle_post_request(self, request: Request) -> Response:
        if not self._validate_session(request):
            return error_response(types.ErrorData(code=types.UNAUTHORIZED, message="Invalid session"))

        try:
            body = await read_request_body(request, max_body_bytes=self.max_body_bytes)
            payload = decode_json(body)
        except McpError as err:
            return error_response(err.error)
        if payload is None:
            return error_response(types.ErrorData(code=types.BAD_REQUEST, message="empty request body"))

        headers: dict[str, str] = {}
        data = body.decode()
        stream_id = None
        if self.server is not None and isinstance(payload, dict) and "method" in payload:
            try:
                envelope = types.parse_message(payload)
            except (ValueError, ValidationError) as exc:
                return error_response(types.ErrorData(code=types.BAD_REQUEST, message=f"invalid envelope: {exc}"))
            if not isinstance(envelope, types.Request):
                return error_response(types.ErrorData(code=types.BAD_REQUEST, message="expected a request envelope"))

            stream_id = request.headers.get(STREAM_ID_HEADER)
            session, created = self._session_for(self.server, request, envelope)
            reply = await self._dispatch(self.server, envelope, session, request, stream_id)
            if created:
                if not session.stateless and isinstance(reply, types.Response):
                    headers["X-Session-ID"] = session.id
                else:
                    session.close()
            if reply is None:
                return Response(status_code=202)
            data = types.dump_message(reply)

        event = types.StoredEvent(id=self.next_event_id(), data=data, stream_id=stream_id)
        event = await self.publish(event)

        if self.json_response:
            return JSONResponse({"status": "ok", "id": event.id}, headers=headers)
        return Response(status_code=202, headers=headers)

    async def _handle_delete_request(self, request: Request) -> Response:
        if not self._validate_session(request):
            return error_response(types.ErrorData(code=types.UNAUTHORIZED, message="Invalid session"))

        if self.server is not None and (session_id := request.headers.get(SESSION_ID_HEADER)):
            if session := self.server.sessions.get(session_id):
                session.close()

        logger.info("Closing %d SSE streams", self.stream.client_count)
        self.stream.close_all()
        return Response(status_code=204)

    def _session_for(
        self, server: Server, request: Request, envelope: types.Request
    ) -> tuple[ServerSession, bool]:
        """Pick the session a POSTed request runs in; the flag tells whether it is new."""
        session_id = request.headers.get(SESSION_ID_HEADER)
        if session_id and (session := server.sessions.get(session_id)):
            return session, False
        if envelope.method == types.INITIALIZE:
            return server.create_session(), True
        return server.create_session(stateless=True), True

    async def _dispatch(
        self,
        server: Server,
        envelope: types.Request,
        session: ServerSession,
        request: Request,
        stream_id: str | None,
    ) -> types.Response | types.ErrorResponse | None:
        pipe = StreamPipe()

        async def pump_chunks() -> None:
            async for chunk in pipe:
                await self.stream.broadcast_chunk(chunk.model_copy(update={"request_id": envelope.id}), stream_id)

        async with anyio.create_task_group() as tg:
            tg.start_soon(pump_chunks)
            try:
                return await server.dispatch(envelope, session, request_data=request, stream=pipe)
            finally:
                pipe.close_writer()

    async def publish(self, event: types.StoredEvent) -> types.StoredEvent:
        """Store ``event`` when a store is configured, then broadcast it."""
        if self.event_store is not None:
            event = await self.event_store.store_event(event)
        delivered = await self.stream.broadcast(event)
        logger.debug("Published event %s to %d clients", event.id, delivered)
        return event


class StreamableHTTPASGIApp:
    """
    ASGI application for Streamable HTTP server transport.
    """

    def __init__(self, transport: StreamableHTTPTransport):
        self.transport = transport

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.transport.handle_request(scope, receive, send)


def create_streamable_http_app(
    server: Server | None = None,
    *,
    settings: Settings | None = None,
    event_store: EventStore | None = None,
    middleware: list[Middleware] | None = None,
    path: str = "/",
) -> Starlette:
    """Build a Starlette app serving the streamable transport at ``path``.

    The transport is reachable as ``app.state.transport``.
    """
    settings = settings or Settings()
    if middleware is None:
        middleware = build_middleware(settings)
    if server is not None:
        server.apply_settings(settings)

    transport = StreamableHTTPTransport(
        server,
        event_store=event_store,
        stream=SseStream(
            max_clients=settings.sse_max_clients,
            buffer_size=settings.sse_send_buffer,
            retry_ms=settings.sse_retry_ms,
        ),
        session_id=settings.session_id,
        json_response=settings.json_response,
        max_body_bytes=settings.max_body_bytes,
    )

    async def health(request: Request) -> Response:
        return PlainTextResponse("OK")

    app = Starlette(
        debug=settings.debug,
        routes=[
            Route("/health", endpoint=health, methods=["GET"]),
            Route(path, endpoint=StreamableHTTPASGIApp(transport)),
        ],
        middleware=middleware,
    )
    app.state.transport = transport
    return app
