"""Shared construction of the httpx clients used by the HTTP and SSE client transports."""

from typing import Any, Protocol

import httpx

__all__ = ["McpHttpClientFactory", "create_mcp_http_client", "DEFAULT_TIMEOUT", "DEFAULT_SSE_READ_TIMEOUT"]

DEFAULT_TIMEOUT = 30.0
# Event streams stay idle between events, so reads wait much longer.
DEFAULT_SSE_READ_TIMEOUT = 300.0


class McpHttpClientFactory(Protocol):
    def __call__(
        self,
        headers: dict[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> httpx.AsyncClient: ...


def create_mcp_http_client(
    headers: dict[str, str] | None = None,
    timeout: httpx.Timeout | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    **kwargs: Any,
) -> httpx.AsyncClient:
    """Create an httpx AsyncClient with the defaults every transport expects.

    Redirects are always followed and requests time out after 30 seconds unless
    ``timeout`` says otherwise. ``transport`` lets tests route requests straight
    into an ASGI app:

        transport = httpx.ASGITransport(app=create_http_app(server))
        async with create_mcp_http_client(transport=transport) as client:
            ...

    The returned client must be used as an async context manager.
    """
    options: dict[str, Any] = {
        "follow_redirects": True,
        "timeout": timeout if timeout is not None else httpx.Timeout(DEFAULT_TIMEOUT),
    }
    if headers is not None:
        options["headers"] = headers
    if transport is not None:
        options["transport"] = transport
    options.update(kwargs)
    return httpx.AsyncClient(**options)
