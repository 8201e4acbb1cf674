"""
MCP Server Module

This module provides a framework for creating an MCP (Model Context Protocol) server.
It keeps the handler table, answers the built-in protocol methods, and dispatches
every decoded request envelope to the registered callback.

Usage:
1. Create a Server instance:
   server = Server("your_server_name")

2. Define request handlers using decorators:
   @server.list_tools()
   async def handle_list_tools() -> list[types.Tool]:
       # Implementation

   @server.call_tool()
   async def handle_call_tool(name: str, args: dict[str, Any]) -> Any:
       # Implementation

   @server.list_prompts()
   async def handle_list_prompts() -> list[types.Prompt]:
       # Implementation

   @server.get_prompt()
   async def handle_get_prompt(name: str, args: dict[str, Any]) -> types.Prompt:
       # Implementation

   @server.list_resources()
   async def handle_list_resources() -> list[types.Resource]:
       # Implementation

   @server.read_resource()
   async def handle_read_resource(uri: str) -> ReadResourceContents:
       # Implementation

   @server.list_resource_templates()
   async def handle_list_resource_templates() -> list[types.ResourceTemplate]:
       # Implementation

3. Run the server over a transport:
   async def main():
       async with mcpkit.server.stdio.stdio_server() as (read_stream, write_stream):
           await server.run(read_stream, write_stream)

   anyio.run(main)

Handlers run concurrently; responses are written as each handler returns.
Requests without an id cannot be correlated by the client, so they are answered
one at a time in arrival order.
"""

from __future__ import annotations as _annotations

import contextvars
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any, TypeVar

import anyio
import jsonschema
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import BaseModel, ValidationError

import mcpkit.types as types
from mcpkit.server.lowlevel.helper_types import ReadResourceContents
from mcpkit.server.models import InitializationOptions
from mcpkit.server.session import DEFAULT_SESSION_TTL, ServerSession, SessionManager
from mcpkit.server.settings import Settings
from mcpkit.shared.context import RequestContext
from mcpkit.shared.exceptions import McpError, to_error_data
from mcpkit.shared.message import SessionMessage
from mcpkit.shared.stream import StreamPipe

logger = logging.getLogger(__name__)

RequestHandler = Callable[[Any], Awaitable[Any]]
NotificationHandler = Callable[[Any], Awaitable[None]]

ModelT = TypeVar("ModelT", bound=BaseModel)

request_ctx: contextvars.ContextVar[RequestContext[Any]] = contextvars.ContextVar("request_ctx")


def _to_wire(value: Any) -> Any:
    if isinstance(value, types.MCPModel):
        return value.to_wire()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(value, list | tuple):
        return [_to_wire(item) for item in value]
    return value


def _parse_params(method: str, model: type[ModelT], params: Any) -> ModelT:
    try:
        return model.model_validate(params if params is not None else {})
    except ValidationError as exc:
        raise McpError.of(types.BAD_REQUEST, f"invalid {method} params: {exc}") from exc


def _error(request: types.Request, code: int, message: str) -> types.ErrorResponse:
    return types.ErrorResponse(id=request.id, error=types.ErrorData(code=code, message=message))


class Server:
    def __init__(
        self,
        name: str,
        version: str | None = None,
        instructions: str | None = None,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
    ):
        self.name = name
        self.version = version
        self.instructions = instructions
        self.request_handlers: dict[str, RequestHandler] = {}
        self.notification_handlers: dict[str, NotificationHandler] = {}
        self.sessions = SessionManager(ttl=session_ttl)
        self._tool_cache: dict[str, types.Tool] = {}
        logger.debug("Initializing server %r", name)

    def create_initialization_options(self) -> InitializationOptions:
        return InitializationOptions(
            server_name=self.name,
            server_version=self.version or "unknown",
            capabilities=self.get_capabilities(),
            instructions=self.instructions,
        )

    def get_capabilities(self, experimental_capabilities: dict[str, Any] | None = None) -> types.ServerCapabilities:
        """Convert existing handlers to a ServerCapabilities object."""
        prompts_capability = None
        resources_capability = None
        tools_capability = None

        if types.LIST_PROMPTS in self.request_handlers:
            prompts_capability = types.PromptsCapability()

        if types.LIST_RESOURCES in self.request_handlers:
            resources_capability = types.ResourcesCapability()

        if types.LIST_TOOLS in self.request_handlers:
            tools_capability = types.ToolsCapability()

        return types.ServerCapabilities(
            prompts=prompts_capability,
            resources=resources_capability,
            tools=tools_capability,
            experimental=experimental_capabilities,
        )

    def apply_settings(self, settings: Settings) -> None:
        """Adopt the session lifetime from ``settings`` when it was configured explicitly."""
        if "session_ttl" in settings.model_fields_set:
            self.sessions.ttl = settings.session_ttl_delta

    def create_session(self, *, stateless: bool = False) -> ServerSession:
        return self.sessions.create(self.create_initialization_options(), stateless=stateless)

    @property
    def request_context(self) -> RequestContext[Any]:
        """If called outside of a request context, this will raise a LookupError."""
        return request_ctx.get()

    def list_tools(self):
        def decorator(func: Callable[[], Awaitable[list[types.Tool]]]):
            logger.debug("Registering handler for listTools")

            async def handler(_: Any):
                tools = await func()
                self._tool_cache = {tool.name: tool for tool in tools}
                return _to_wire(tools)

            self.request_handlers[types.LIST_TOOLS] = handler
            return func

        return decorator

    async def _get_cached_tool_definition(self, tool_name: str) -> types.Tool | None:
        if tool_name not in self._tool_cache and types.LIST_TOOLS in self.request_handlers:
            logger.debug("Tool cache miss for %s, refreshing cache", tool_name)
            await self.request_handlers[types.LIST_TOOLS](None)

        tool = self._tool_cache.get(tool_name)
        if tool is None:
            logger.debug("Tool '%s' not listed, no validation will be performed", tool_name)
        return tool

    def call_tool(self, *, validate_input: bool = True):
        """Register a tool call handler.

        Args:
            validate_input: If True, validates input against the tool's inputSchema
                before the handler runs.

        The handler receives the tool name and its arguments and returns any JSON
        value, which becomes the response result verbatim.
        """

        def decorator(func: Callable[[str, dict[str, Any]], Awaitable[Any]]):
            logger.debug("Registering handler for callTool")

            async def handler(params: Any):
                req = _parse_params(types.CALL_TOOL, types.CallToolParams, params)
                if validate_input:
                    tool = await self._get_cached_tool_definition(req.name)
                    if tool is not None and tool.input_schema is not None:
                        try:
                            jsonschema.validate(instance=req.args, schema=tool.input_schema)
                        except jsonschema.ValidationError as e:
                            raise McpError.of(types.BAD_REQUEST, f"Input validation error: {e.message}") from e
                return _to_wire(await func(req.name, req.args))

            self.request_handlers[types.CALL_TOOL] = handler
            return func

        return decorator

    def list_prompts(self):
        def decorator(func: Callable[[], Awaitable[list[types.Prompt]]]):
            logger.debug("Registering handler for listPrompts")

            async def handler(_: Any):
                return _to_wire(await func())

            self.request_handlers[types.LIST_PROMPTS] = handler
            return func

        return decorator

    def get_prompt(self):
        def decorator(func: Callable[[str, dict[str, Any]], Awaitable[types.Prompt]]):
            logger.debug("Registering handler for getPrompt")

            async def handler(params: Any):
                req = _parse_params(types.GET_PROMPT, types.GetPromptParams, params)
                return _to_wire(await func(req.name, req.args))

            self.request_handlers[types.GET_PROMPT] = handler
            return func

        return decorator

    def list_resources(self):
        def decorator(func: Callable[[], Awaitable[list[types.Resource]]]):
            logger.debug("Registering handler for listResources")

            async def handler(_: Any):
                return _to_wire(await func())

            self.request_handlers[types.LIST_RESOURCES] = handler
            return func

        return decorator

    def read_resource(self):
        def decorator(
            func: Callable[[str], Awaitable[ReadResourceContents | tuple[str | bytes, str] | str | bytes]],
        ):
            logger.debug("Registering handler for readResource")

            async def handler(params: Any):
                req = _parse_params(types.READ_RESOURCE, types.ReadResourceParams, params)
                result = await func(req.uri)
                match result:
                    case ReadResourceContents():
                        return result
                    case (str() | bytes() as content, str() as mime_type):
                        data = content.encode() if isinstance(content, str) else content
                        return ReadResourceContents(data, mime_type)
                    case str():
                        return ReadResourceContents(result.encode(), "text/plain")
                    case bytes():
                        return ReadResourceContents(result)
                    case _:
                        raise ValueError(f"Unexpected return type from read_resource: {type(result)}")

            self.request_handlers[types.READ_RESOURCE] = handler
            return func

        return decorator

    def list_resource_templates(self):
        def decorator(func: Callable[[], Awaitable[list[types.ResourceTemplate]]]):
            logger.debug("Registering handler for listResourceTemplates")

            async def handler(_: Any):
                return _to_wire(await func())

            self.request_handlers[types.LIST_RESOURCE_TEMPLATES] = handler
            return func

        return decorator

    def initialized_notification(self):
        def decorator(func: Callable[[], Awaitable[None]]):
            logger.debug("Registering handler for initialized notification")

            async def handler(_: Any):
                await func()

            self.notification_handlers[types.INITIALIZED] = handler
            return func

        return decorator

    async def dispatch(
        self,
        request: types.Request,
        session: ServerSession,
        *,
        request_data: Any = None,
        stream: StreamPipe | None = None,
        raw_resources: bool = False,
    ) -> types.Response | types.ErrorResponse | None:
        """Run one request against the handler table.

        Returns the response envelope, or None for notifications and for requests
        cancelled while in flight. ``raw_resources`` keeps ``readResource``
        results as ``ReadResourceContents`` for transports that write raw bytes.
        """
        if not request.method:
            return _error(request, types.BAD_REQUEST, "missing method")

        # The TTL bounds a session's lifetime even while its connection stays open.
        if session.is_expired:
            if not session.closed:
                logger.info("Session %s expired", session.id)
                session.close()
            if request.is_notification:
                return None
            return _error(request, types.UNAUTHORIZED, "session expired")

        if request.is_notification:
            await self._handle_notification(request, session)
            return None

        if request.method not in types.METHODS:
            return _error(request, types.NOT_FOUND, f"unknown method: {request.method}")

        if not session.initialized and request.method not in (types.INITIALIZE, types.PING):
            return _error(request, types.BAD_REQUEST, "session not initialized")

        if request.method == types.INITIALIZE:
            handler = self._make_initialize_handler(session)
        elif request.method == types.PING:
            handler = _ping_handler
        else:
            handler = self.request_handlers.get(request.method)
        if handler is None:
            return _error(request, types.NOT_FOUND, "handler not registered")

        logger.debug("Dispatching request %s (id=%s)", request.method, request.id)
        scope = anyio.CancelScope()
        if request.id is not None:
            try:
                session.begin_request(request.id, scope)
            except McpError as err:
                return types.ErrorResponse(id=request.id, error=err.error)

        token = request_ctx.set(
            RequestContext(request.id, request.method, session, request=request_data, stream=stream)
        )
        response: types.Response | types.ErrorResponse | None = None
        try:
            with scope:
                result = await handler(request.params)
                if isinstance(result, ReadResourceContents) and not raw_resources:
                    result = result.to_result().to_wire()
                response = types.Response(id=request.id, result=result)
        except McpError as err:
            response = types.ErrorResponse(id=request.id, error=err.error)
        except Exception as err:
            logger.exception("Handler for %s failed", request.method)
            response = types.ErrorResponse(id=request.id, error=to_error_data(err))
        finally:
            request_ctx.reset(token)
            if request.id is not None:
                session.end_request(request.id)

        if scope.cancel_called:
            logger.info("Request %s cancelled, response suppressed", request.id)
            return None
        return response

    def _make_initialize_handler(self, session: ServerSession) -> RequestHandler:
        async def handler(params: Any):
            req = _parse_params(types.INITIALIZE, types.InitializeRequestParams, params)
            return session.initialize(req).to_wire()

        return handler

    async def _handle_notification(self, request: types.Request, session: ServerSession) -> None:
        try:
            if request.method == types.CANCEL:
                params = _parse_params(types.CANCEL, types.CancelParams, request.params)
                if not session.cancel_request(params.id):
                    logger.debug("Cancel for unknown request %s ignored", params.id)
            elif request.method == types.INITIALIZED:
                session.client_ready = True

            if handler := self.notification_handlers.get(request.method):
                logger.debug("Dispatching notification %s", request.method)
                await handler(request.params)
        except Exception:
            logger.exception("Uncaught exception in notification handler for %s", request.method)

    async def run(
        self,
        read_stream: MemoryObjectReceiveStream[SessionMessage | Exception],
        write_stream: MemoryObjectSendStream[SessionMessage],
        *,
        # When True, clients may call methods without initializing first.
        stateless: bool = False,
        # When True, exceptions read from the stream are raised, which shuts the
        # server down but makes tracing failures much easier in tests.
        raise_exceptions: bool = False,
        # How long to wait for in-flight handlers once the input ends.
        shutdown_timeout: float | None = None,
    ) -> None:
        session = self.create_session(stateless=stateless)
        pending = 0
        drained = anyio.Event()

        async def handle(message: SessionMessage) -> None:
            nonlocal pending, drained
            pending += 1
            try:
                await self._handle_message(message, session, write_stream)
            finally:
                pending -= 1
                if pending == 0:
                    drained.set()
                    drained = anyio.Event()

        try:
            async with read_stream, write_stream, anyio.create_task_group() as tg:
                async for message in read_stream:
                    if isinstance(message, Exception):
                        logger.error("Received exception from stream: %s", message)
                        if raise_exceptions:
                            raise message
                        await self._send(
                            write_stream,
                            types.ErrorResponse(
                                error=types.ErrorData(
                                    code=types.BAD_REQUEST, message=f"failed to parse request: {message}"
                                )
                            ),
                        )
                        continue

                    logger.debug("Received message: %s", message.message)
                    if isinstance(message.message, types.Request) and message.message.id is not None:
                        tg.start_soon(handle, message)
                    else:
                        await handle(message)

                if pending and shutdown_timeout is not None:
                    with anyio.move_on_after(shutdown_timeout):
                        await drained.wait()
                    if pending:
                        logger.warning("Cancelling %d in-flight handlers after shutdown timeout", pending)
                    tg.cancel_scope.cancel()
        finally:
            session.close()

    async def _handle_message(
        self,
        message: SessionMessage,
        session: ServerSession,
        write_stream: MemoryObjectSendStream[SessionMessage],
    ) -> None:
        match message.message:
            case types.Request() as request:
                request_data = message.metadata.request_context if message.metadata else None
                response = await self.dispatch(request, session, request_data=request_data)
                if response is not None:
                    await self._send(write_stream, response)
            case _:
                logger.warning("Ignoring unexpected message from client: %s", message.message)

    async def _send(self, write_stream: MemoryObjectSendStream[SessionMessage], message: types.Message) -> None:
        try:
            await write_stream.send(SessionMessage(message))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.debug("Connection closed before response could be written")


async def _ping_handler(params: Any) -> Any:
    req = _parse_params(types.PING, types.PingParams, params)
    return types.PingResult(timestamp=req.timestamp, server_timestamp=int(time.time() * 1000)).to_wire()
