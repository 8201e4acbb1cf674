"""HTTP middleware for the MCP Starlette apps.

All middleware answer failures with the standard error envelope
(``{"error": {"code": ..., "message": ...}}``) so clients can recover the code.
``build_middleware`` turns ``Settings`` into an ordered chain, outermost first.
"""

import logging
import time
from collections.abc import Callable, Iterable

import anyio
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

import mcpkit.types as types
from mcpkit.server.settings import Settings
from mcpkit.utilities.logging import redact_sensitive_data

logger = logging.getLogger(__name__)


def _error(code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": {"code": code, "message": message}}, status_code=code)


class RecoveryMiddleware(BaseHTTPMiddleware):
    """Turn any unhandled exception into a generic 500 without leaking details."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        try:
            return await call_next(request)
        except Exception:
            logger.exception("panic recovered (method=%s path=%s)", request.method, request.url.path)
            return _error(types.INTERNAL_ERROR, "internal server error")


class LoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, skip_paths: Iterable[str] = ()):
        super().__init__(app)
        self.skip_paths = set(skip_paths)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in self.skip_paths:
            return await call_next(request)

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Request headers: %s", redact_sensitive_data(dict(request.headers)))

        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000

        status = response.status_code
        if status >= 500:
            level, label = logging.ERROR, "Server error"
        elif status >= 400:
            level, label = logging.WARNING, "Client error"
        elif status >= 300:
            level, label = logging.INFO, "Redirection"
        else:
            level, label = logging.INFO, "Success"
        logger.log(level, "%s: %s %s -> %d (%.1f ms)", label, request.method, request.url.path, status, duration_ms)
        return response


class CORSMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, allow_origins: Iterable[str] = ("*",)):
        super().__init__(app)
        self.allow_origins = list(allow_origins)

    def _allowed_origin(self, origin: str | None) -> str | None:
        for allowed in self.allow_origins:
            if allowed == "*":
                return origin or "*"
            if allowed == origin:
                return origin
        return None

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        allowed = self._allowed_origin(request.headers.get("origin"))

        # Preflight requests never reach the app
        if request.method == "OPTIONS":
            response = Response(status_code=204)
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
        else:
            response = await call_next(request)

        if allowed is not None:
            response.headers["Access-Control-Allow-Origin"] = allowed
        return response


class BearerAuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, validate_token: Callable[[str], bool]):
        super().__init__(app)
        self.validate_token = validate_token

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        header = request.headers.get("authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token or not self.validate_token(token):
            return _error(types.UNAUTHORIZED, "Unauthorized")
        return await call_next(request)


class TokenBucket:
    """Token bucket shared by every request passing through one middleware instance."""

    def __init__(self, rate: float, burst: int):
        if rate <= 0 or burst <= 0:
            raise ValueError("rate and burst must be positive")
        self.rate = rate
        self.burst = burst
        self._tokens = float(burst)
        self._updated = time.monotonic()

    def try_acquire(self) -> bool:
        now = time.monotonic()
        self._tokens = min(self.burst, self._tokens + (now - self._updated) * self.rate)
        self._updated = now
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, rps: float, burst: int):
        super().__init__(app)
        self.bucket = TokenBucket(rps, burst)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self.bucket.try_acquire():
            return _error(types.TOO_MANY_REQUESTS, "Too many requests")
        return await call_next(request)


class MaxBodySizeMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, max_bytes: int):
        super().__init__(app)
        self.max_bytes = max_bytes

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        content_length = request.headers.get("content-length")
        if content_length is not None and content_length.isdigit() and int(content_length) > self.max_bytes:
            return _error(types.PAYLOAD_TOO_LARGE, "Request too large")
        return await call_next(request)


class TimeoutMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, timeout: float):
        super().__init__(app)
        self.timeout = timeout

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        try:
            with anyio.fail_after(self.timeout):
                return await call_next(request)
        except TimeoutError:
            logger.warning("Request timed out after %.1fs: %s %s", self.timeout, request.method, request.url.path)
            return _error(types.GATEWAY_TIMEOUT, "Request timed out")


def build_middleware(settings: Settings) -> list[Middleware]:
    """Middleware chain for ``settings``, outermost first."""
    middleware = [
        Middleware(RecoveryMiddleware),
        Middleware(LoggingMiddleware, skip_paths=["/health"]),
    ]
    if settings.cors_origins:
        middleware.append(Middleware(CORSMiddleware, allow_origins=settings.cors_origins))
    if settings.auth_tokens:
        tokens = frozenset(settings.auth_tokens)
        middleware.append(Middleware(BearerAuthMiddleware, validate_token=tokens.__contains__))
    if settings.rate_limit_rps:
        middleware.append(Middleware(RateLimitMiddleware, rps=settings.rate_limit_rps, burst=settings.rate_limit_burst))
    if settings.max_body_bytes:
        middleware.append(Middleware(MaxBodySizeMiddleware, max_bytes=settings.max_body_bytes))
    if settings.request_timeout:
        middleware.append(Middleware(TimeoutMiddleware, timeout=settings.request_timeout))
    return middleware
