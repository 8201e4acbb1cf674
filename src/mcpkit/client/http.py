"""
Client transport for plain HTTP: every request is one POST.

Two request styles match the two server styles:

- per-path (default): ``POST <url>/<method>`` with the params as body
- envelope: ``POST <url>/mcp`` with ``{"method", "params", "id"}``

Error bodies (``{"error": {"code", "message"}}``) are decoded so the server's
code survives; a raw ``readResource`` body is framed back into
``{"data": <base64>, "mimeType": ...}``.
"""

import base64
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import urlparse

import anyio
import httpx
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

import mcpkit.types as types
from mcpkit.shared._httpx_utils import DEFAULT_TIMEOUT, McpHttpClientFactory, create_mcp_http_client
from mcpkit.shared.message import SessionMessage

logger = logging.getLogger(__name__)

Streams = tuple[MemoryObjectReceiveStream[SessionMessage | Exception], MemoryObjectSendStream[SessionMessage]]


def validate_url(url: str) -> str:
    """Base URL without a trailing slash. Raises ValueError unless the scheme is http(s)."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"unsupported server URL {url!r}: expected an http:// or https:// URL")
    return url.rstrip("/")


def error_from_response(response: httpx.Response) -> types.ErrorData:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        try:
            return types.ErrorData.model_validate(body["error"])
        except ValueError:
            pass
    message = response.text.strip() or response.reason_phrase or "request failed"
    return types.ErrorData(code=response.status_code, message=message)


def response_to_message(request: types.Request, response: httpx.Response) -> types.Message:
    """Turn an HTTP reply into the response envelope for ``request``."""
    if response.is_error:
        return types.ErrorResponse(id=request.id, error=error_from_response(response))

    if response.status_code == 202 or not response.content:
        return types.Response(id=request.id, result=None)

    content_type = response.headers.get("content-type", "")
    if request.method == types.READ_RESOURCE and not content_type.startswith("application/json"):
        mime_type = content_type.split(";")[0].strip() or "application/octet-stream"
        result = types.ReadResourceResult(data=base64.b64encode(response.content).decode(), mime_type=mime_type)
        return types.Response(id=request.id, result=result.to_wire())

    try:
        body = response.json()
    except ValueError as exc:
        error = types.ErrorData(code=types.INTERNAL_ERROR, message=f"invalid response body: {exc}")
        return types.ErrorResponse(id=request.id, error=error)
    if isinstance(body, dict) and "result" in body:
        return types.Response(id=request.id, result=body["result"])
    return types.Response(id=request.id, result=body)


@asynccontextmanager
async def http_client(
    url: str,
    *,
    envelope: bool = False,
    headers: dict[str, str] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    httpx_client_factory: McpHttpClientFactory = create_mcp_http_client,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[Streams]:
    """
    Client transport for request/response HTTP.

    Args:
        url: Server base URL, e.g. ``http://127.0.0.1:8000``
        envelope: Send ``POST <url>/mcp`` envelopes instead of ``POST <url>/<method>``
        headers: Extra headers for every request
        timeout: HTTP request timeout in seconds
        httpx_client_factory: Builds the underlying httpx client
        transport: httpx transport override, e.g. ``httpx.ASGITransport`` in tests

    Raises:
        ValueError: If ``url`` is not an http:// or https:// URL
    """
    base_url = validate_url(url)

    read_stream_writer, read_stream = anyio.create_memory_object_stream[SessionMessage | Exception](0)
    write_stream, write_stream_reader = anyio.create_memory_object_stream[SessionMessage](0)

    async with httpx_client_factory(
        headers=headers, timeout=httpx.Timeout(timeout), transport=transport
    ) as client, anyio.create_task_group() as tg:

        async def post(request: types.Request) -> None:
            if envelope:
                target, body = f"{base_url}/mcp", request.to_wire()
            else:
                target, body = f"{base_url}/{request.method}", request.params

            logger.debug("POST %s", target)
            kwargs: dict[str, Any] = {"json": body} if body is not None else {}
            try:
                response = await client.post(target, **kwargs)
            except httpx.HTTPError as exc:
                logger.warning("HTTP request for %s failed: %s", request.method, exc)
                reply: types.Message = types.ErrorResponse(
                    id=request.id,
                    error=types.ErrorData(code=types.SERVICE_UNAVAILABLE, message=f"request failed: {exc}"),
                )
            else:
                reply = response_to_message(request, response)

            if request.is_notification:
                if isinstance(reply, types.ErrorResponse):
                    logger.warning("Notification %s failed: %s", request.method, reply.error.message)
                return
            try:
                await read_stream_writer.send(SessionMessage(reply))
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                logger.debug("Dropping response for %s, session closed", request.method)

        async def post_writer():
            try:
                async with write_stream_reader:
                    async for session_message in write_stream_reader:
                        message = session_message.message
                        if not isinstance(message, types.Request):
                            logger.warning("Cannot send %s over HTTP", type(message).__name__)
                            continue
                        tg.start_soon(post, message)
            except anyio.ClosedResourceError:
                logger.debug("Write stream closed")

        tg.start_soon(post_writer)
        try:
            yield read_stream, write_stream
        finally:
            tg.cancel_scope.cancel()
            read_stream_writer.close()
            read_stream.close()
            write_stream.close()
