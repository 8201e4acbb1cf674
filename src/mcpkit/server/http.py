"""HTTP request/response transport.

Every call is one POST. Two body styles are accepted:

- ``POST /mcp`` with ``{"method": ..., "params": ..., "id": ...}``
- ``POST /<method>`` with the params as the body

Success answers 200 ``{"result": ...}``. Failures answer ``{"error": {...}}`` with
the error code as HTTP status when it is a valid one. ``readResource`` answers
with the raw bytes and the resource MIME type. Notifications answer 202.

Example:
    ```python
    app = create_http_app(server)
    uvicorn.run(app, host="127.0.0.1", port=8000)
    ```
"""

import json
import logging
from typing import Any

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route

import mcpkit.types as types
from mcpkit.server.lowlevel.helper_types import ReadResourceContents
from mcpkit.server.lowlevel.server import Server
from mcpkit.server.middleware import build_middleware
from mcpkit.server.settings import Settings
from mcpkit.shared.exceptions import McpError

logger = logging.getLogger(__name__)

DEFAULT_MAX_BODY_BYTES = 1_000_000


def error_status(code: int) -> int:
    """HTTP status used to carry an error code."""
    return code if 400 <= code <= 599 else types.INTERNAL_ERROR


def error_response(error: types.ErrorData) -> JSONResponse:
    return JSONResponse({"error": error.to_wire()}, status_code=error_status(error.code))


async def read_request_body(request: Request, *, max_body_bytes: int | None = DEFAULT_MAX_BODY_BYTES) -> bytes:
    """Read an HTTP request body with a hard cap.

    Raises McpError(413) as soon as the body is known to exceed ``max_body_bytes``,
    without buffering more than the limit.
    """
    if max_body_bytes is None:
        return await request.body()

    if max_body_bytes <= 0:
        raise ValueError("max_body_bytes must be positive or None")

    too_large = McpError.of(types.PAYLOAD_TOO_LARGE, "Request too large")

    content_length = request.headers.get("content-length")
    if content_length is not None and content_length.isdigit() and int(content_length) > max_body_bytes:
        raise too_large

    body = bytearray()
    async for chunk in request.stream():
        if len(body) + len(chunk) > max_body_bytes:
            raise too_large
        body.extend(chunk)

    return bytes(body)


def decode_json(body: bytes) -> Any:
    """Decode a JSON request body; an empty body decodes to None."""
    if not body.strip():
        return None
    try:
        return json.loads(body)
    except ValueError as exc:
        raise McpError.of(types.BAD_REQUEST, f"invalid request body: {exc}") from exc


class HttpTransport:
    """Binds a Server to starlette endpoints, one stateless session per request."""

    def __init__(self, server: Server, *, max_body_bytes: int | None = DEFAULT_MAX_BODY_BYTES):
        self.server = server
        self.max_body_bytes = max_body_bytes

    async def handle_envelope(self, request: Request) -> Response:
        try:
            body = decode_json(await read_request_body(request, max_body_bytes=self.max_body_bytes))
            if not isinstance(body, dict):
                raise McpError.of(types.BAD_REQUEST, "request body must be a JSON object")
            envelope = types.parse_message(body)
            if not isinstance(envelope, types.Request):
                raise McpError.of(types.BAD_REQUEST, "missing method")
        except McpError as err:
            return error_response(err.error)
        except ValueError as exc:
            return error_response(types.ErrorData(code=types.BAD_REQUEST, message=str(exc)))
        return await self._dispatch(envelope, request)

    async def handle_method(self, request: Request) -> Response:
        method = request.path_params["method"]
        try:
            params = decode_json(await read_request_body(request, max_body_bytes=self.max_body_bytes))
        except McpError as err:
            return error_response(err.error)
        return await self._dispatch(types.Request(method=method, params=params), request)

    async def handle_health(self, request: Request) -> Response:
        return PlainTextResponse("OK")

    async def _dispatch(self, envelope: types.Request, request: Request) -> Response:
        logger.debug("HTTP request for %s", envelope.method)
        session = self.server.create_session(stateless=True)
        try:
            response = await self.server.dispatch(envelope, session, request_data=request, raw_resources=True)
        finally:
            session.close()

        match response:
            case None:
                return Response(status_code=202)
            case types.ErrorResponse(error=error):
                return error_response(error)
            case types.Response(result=ReadResourceContents() as contents):
                return Response(content=contents.content, media_type=contents.mime_type)
            case types.Response():
                return JSONResponse(response.to_wire())


def create_http_app(
    server: Server,
    *,
    settings: Settings | None = None,
    middleware: list[Middleware] | None = None,
) -> Starlette:
    """Build a Starlette app exposing ``server`` over plain HTTP."""
    settings = settings or Settings()
    if middleware is None:
        middleware = build_middleware(settings)
    server.apply_settings(settings)

    transport = HttpTransport(server, max_body_bytes=settings.max_body_bytes)
    return Starlette(
        debug=settings.debug,
        routes=[
            Route("/health", endpoint=transport.handle_health, methods=["GET"]),
            Route("/mcp", endpoint=transport.handle_envelope, methods=["POST"]),
            Route("/{method}", endpoint=transport.handle_method, methods=["POST"]),
        ],
        middleware=middleware,
    )
