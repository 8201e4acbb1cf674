import json
from datetime import timedelta
from typing import Any

import anyio
import pytest

import mcpkit.types as types
from mcpkit.server.lowlevel import Server
from mcpkit.server.lowlevel.helper_types import ReadResourceContents
from mcpkit.server.settings import Settings
from mcpkit.shared.exceptions import McpError
from mcpkit.shared.memory import create_connected_server_and_client_session
from mcpkit.shared.message import SessionMessage
from mcpkit.shared.stream import StreamPipe


def make_server() -> Server:
    server = Server("lowlevel-test", version="1.0")

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return [
            types.Tool(
                name="add",
                description="Add two numbers",
                input_schema={
                    "type": "object",
                    "required": ["a", "b"],
                    "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
                },
            ),
            types.Tool(name="fail"),
            types.Tool(name="teapot"),
            types.Tool(name="stream"),
        ]

    @server.call_tool()
    async def call_tool(name: str, args: dict[str, Any]) -> Any:
        match name:
            case "add":
                return args["a"] + args["b"]
            case "fail":
                raise RuntimeError("kaboom")
            case "teapot":
                raise McpError.of(418, "I'm a teapot")
            case "stream":
                pipe = server.request_context.stream
                assert pipe is not None
                await pipe.write_data({"part": 1})
                await pipe.write_complete()
                return "streamed"
            case _:
                raise McpError.of(types.NOT_FOUND, "Tool not found")

    @server.list_prompts()
    async def list_prompts() -> list[types.Prompt]:
        return [types.Prompt(name="greet", description="Say hello")]

    @server.get_prompt()
    async def get_prompt(name: str, args: dict[str, Any]) -> types.Prompt:
        return types.Prompt(name=name, description=f"Hello {args.get('who', 'world')}")

    @server.read_resource()
    async def read_resource(uri: str):
        if uri == "file:///hello.txt":
            return "hello", "text/plain"
        return b"\x00\x01"

    return server


async def dispatch(server: Server, method: str, params: Any = None, id: types.RequestId | None = 1, session=None):
    session = session or server.create_session(stateless=True)
    return await server.dispatch(types.Request(id=id, method=method, params=params), session)


@pytest.mark.anyio
async def test_call_tool_returns_result_verbatim():
    response = await dispatch(make_server(), types.CALL_TOOL, {"name": "add", "args": {"a": 5, "b": 3}})
    assert isinstance(response, types.Response)
    assert response.result == 8
    assert response.id == 1


@pytest.mark.anyio
async def test_list_methods_return_bare_arrays():
    server = make_server()
    tools = await dispatch(server, types.LIST_TOOLS)
    assert isinstance(tools, types.Response)
    assert [tool["name"] for tool in tools.result] == ["add", "fail", "teapot", "stream"]
    assert tools.result[0]["inputSchema"]["required"] == ["a", "b"]

    prompts = await dispatch(server, types.LIST_PROMPTS)
    assert isinstance(prompts, types.Response)
    assert prompts.result == [{"name": "greet", "description": "Say hello"}]


@pytest.mark.anyio
async def test_get_prompt():
    response = await dispatch(make_server(), types.GET_PROMPT, {"name": "greet", "args": {"who": "Ada"}})
    assert isinstance(response, types.Response)
    assert response.result == {"name": "greet", "description": "Hello Ada"}


@pytest.mark.anyio
async def test_read_resource_is_base64_framed():
    response = await dispatch(make_server(), types.READ_RESOURCE, {"uri": "file:///hello.txt"})
    assert isinstance(response, types.Response)
    assert response.result == {"data": "aGVsbG8=", "mimeType": "text/plain"}


@pytest.mark.anyio
async def test_read_resource_raw_for_byte_transports():
    server = make_server()
    session = server.create_session(stateless=True)
    request = types.Request(id=1, method=types.READ_RESOURCE, params={"uri": "other"})
    response = await server.dispatch(request, session, raw_resources=True)
    assert isinstance(response, types.Response)
    assert response.result == ReadResourceContents(b"\x00\x01", "application/octet-stream")


@pytest.mark.anyio
async def test_unknown_method():
    response = await dispatch(make_server(), "frobnicate")
    assert isinstance(response, types.ErrorResponse)
    assert response.error.code == types.NOT_FOUND
    assert response.error.message == "unknown method: frobnicate"


@pytest.mark.anyio
async def test_known_method_without_handler():
    response = await dispatch(Server("empty"), types.LIST_TOOLS)
    assert isinstance(response, types.ErrorResponse)
    assert response.error.code == types.NOT_FOUND
    assert response.error.message == "handler not registered"


@pytest.mark.anyio
async def test_missing_method():
    response = await dispatch(make_server(), "")
    assert isinstance(response, types.ErrorResponse)
    assert response.error.code == types.BAD_REQUEST


@pytest.mark.anyio
async def test_handler_errors():
    server = make_server()
    failed = await dispatch(server, types.CALL_TOOL, {"name": "fail"})
    assert isinstance(failed, types.ErrorResponse)
    assert failed.error.code == types.INTERNAL_ERROR
    assert failed.error.message == "kaboom"

    teapot = await dispatch(server, types.CALL_TOOL, {"name": "teapot"})
    assert isinstance(teapot, types.ErrorResponse)
    assert teapot.error.code == 418

    missing = await dispatch(server, types.CALL_TOOL, {"name": "nope"})
    assert isinstance(missing, types.ErrorResponse)
    assert missing.error.code == types.NOT_FOUND


@pytest.mark.anyio
async def test_invalid_params():
    response = await dispatch(make_server(), types.CALL_TOOL, {"args": {}})
    assert isinstance(response, types.ErrorResponse)
    assert response.error.code == types.BAD_REQUEST


@pytest.mark.anyio
async def test_tool_input_is_validated_against_schema():
    response = await dispatch(make_server(), types.CALL_TOOL, {"name": "add", "args": {"a": "x", "b": 1}})
    assert isinstance(response, types.ErrorResponse)
    assert response.error.code == types.BAD_REQUEST
    assert response.error.message.startswith("Input validation error")


@pytest.mark.anyio
async def test_ping_reports_server_time():
    response = await dispatch(make_server(), types.PING, {"timestamp": 123})
    assert isinstance(response, types.Response)
    assert response.result["timestamp"] == 123
    assert response.result["serverTimestamp"] > 0


@pytest.mark.anyio
async def test_requests_before_initialize_are_rejected():
    server = make_server()
    session = server.create_session()

    rejected = await dispatch(server, types.LIST_TOOLS, session=session)
    assert isinstance(rejected, types.ErrorResponse)
    assert rejected.error.code == types.BAD_REQUEST

    params = {"protocolVersion": types.PROTOCOL_VERSION, "clientInfo": {"name": "c", "version": "1"}}
    init = await dispatch(server, types.INITIALIZE, params, session=session)
    assert isinstance(init, types.Response)
    assert init.result["serverInfo"] == {"name": "lowlevel-test", "version": "1.0"}
    assert set(init.result["capabilities"]) == {"tools", "prompts"}

    accepted = await dispatch(server, types.LIST_TOOLS, id=2, session=session)
    assert isinstance(accepted, types.Response)


@pytest.mark.anyio
async def test_notifications_are_not_answered():
    server = make_server()
    called = anyio.Event()

    @server.initialized_notification()
    async def on_initialized():
        called.set()

    session = server.create_session(stateless=True)
    assert await dispatch(server, types.INITIALIZED, id=None, session=session) is None
    assert called.is_set()
    assert session.client_ready
    assert await dispatch(server, types.CANCEL, {"id": "unknown"}, id=None) is None


@pytest.mark.anyio
async def test_duplicate_in_flight_id_returns_conflict():
    server = Server("dup")
    started = anyio.Event()
    release = anyio.Event()

    @server.call_tool(validate_input=False)
    async def call_tool(name: str, args: dict[str, Any]) -> Any:
        started.set()
        await release.wait()
        return "done"

    session = server.create_session(stateless=True)
    results: list[Any] = []

    async def first():
        results.append(await dispatch(server, types.CALL_TOOL, {"name": "slow"}, id="r1", session=session))

    async with anyio.create_task_group() as tg:
        tg.start_soon(first)
        await started.wait()
        second = await dispatch(server, types.CALL_TOOL, {"name": "slow"}, id="r1", session=session)
        assert isinstance(second, types.ErrorResponse)
        assert second.error.code == types.CONFLICT
        release.set()

    assert isinstance(results[0], types.Response)
    assert results[0].result == "done"


@pytest.mark.anyio
async def test_cancel_suppresses_response():
    server = Server("cancel")
    started = anyio.Event()
    cancelled = anyio.Event()

    @server.call_tool(validate_input=False)
    async def call_tool(name: str, args: dict[str, Any]) -> Any:
        started.set()
        try:
            await anyio.sleep_forever()
        finally:
            cancelled.set()

    session = server.create_session(stateless=True)
    results: list[Any] = []

    async def run_request():
        results.append(await dispatch(server, types.CALL_TOOL, {"name": "sleep"}, id="r1", session=session))

    async with anyio.create_task_group() as tg:
        tg.start_soon(run_request)
        await started.wait()
        assert await dispatch(server, types.CANCEL, {"id": "r1"}, id=None, session=session) is None

    assert cancelled.is_set()
    assert results == [None]
    assert session.in_flight == []


@pytest.mark.anyio
async def test_request_context_carries_stream():
    server = make_server()
    session = server.create_session(stateless=True)
    pipe = StreamPipe()
    request = types.Request(id=1, method=types.CALL_TOOL, params={"name": "stream"})

    response = await server.dispatch(request, session, stream=pipe)
    assert isinstance(response, types.Response)
    assert response.result == "streamed"

    chunks = [chunk async for chunk in pipe]
    assert json.loads(chunks[0].data or "") == {"part": 1}
    assert chunks[-1].type is types.ChunkType.COMPLETE


def test_request_context_outside_request():
    with pytest.raises(LookupError):
        make_server().request_context


@pytest.mark.anyio
async def test_run_answers_concurrently_and_handles_cancel():
    server = Server("run")
    started = anyio.Event()
    cancelled = anyio.Event()

    @server.call_tool(validate_input=False)
    async def call_tool(name: str, args: dict[str, Any]) -> Any:
        started.set()
        try:
            await anyio.sleep_forever()
        finally:
            cancelled.set()

    client_send, server_read = anyio.create_memory_object_stream[SessionMessage | Exception](10)
    server_send, client_read = anyio.create_memory_object_stream[SessionMessage](10)

    async with anyio.create_task_group() as tg:
        tg.start_soon(lambda: server.run(server_read, server_send, stateless=True))

        await client_send.send(SessionMessage(types.Request(id="r1", method=types.CALL_TOOL, params={"name": "x"})))
        await started.wait()
        await client_send.send(SessionMessage(types.Request(method=types.CANCEL, params={"id": "r1"})))
        await cancelled.wait()

        await client_send.send(SessionMessage(types.Request(id="p", method=types.PING)))
        with anyio.fail_after(2):
            reply = await client_read.receive()
        assert isinstance(reply.message, types.Response)
        assert reply.message.id == "p"

        await client_send.send(ValueError("bad line"))
        with anyio.fail_after(2):
            reply = await client_read.receive()
        assert isinstance(reply.message, types.ErrorResponse)
        assert reply.message.error.code == types.BAD_REQUEST
        assert reply.message.error.message.startswith("failed to parse request")

        client_send.close()

    client_read.close()


@pytest.mark.anyio
async def test_expired_session_stops_serving():
    server = make_server()
    server.sessions.ttl = timedelta(milliseconds=300)

    async with create_connected_server_and_client_session(server) as client:
        assert len(await client.list_tools()) == 4
        assert len(server.sessions) == 1

        await anyio.sleep(0.5)

        with pytest.raises(McpError) as exc_info:
            await client.list_tools()
        assert exc_info.value.error.code == types.UNAUTHORIZED
        assert exc_info.value.error.message == "session expired"
        assert len(server.sessions) == 0

        # the session stays expired for the rest of the connection
        with pytest.raises(McpError):
            await client.ping()


@pytest.mark.anyio
async def test_dispatch_rejects_expired_session():
    server = make_server()
    session = server.create_session(stateless=True)
    session.extend(timedelta(seconds=-1))

    expired = await dispatch(server, types.PING, session=session)
    assert isinstance(expired, types.ErrorResponse)
    assert expired.error.message == "session expired"
    assert await dispatch(server, types.INITIALIZED, id=None, session=session) is None

    fresh = server.create_session(stateless=True)
    fresh.extend(timedelta(minutes=1))
    assert isinstance(await dispatch(server, types.PING, session=fresh), types.Response)


def test_apply_settings_sets_session_ttl():
    server = Server("ttl", session_ttl=timedelta(minutes=5))

    server.apply_settings(Settings())
    assert server.sessions.ttl == timedelta(minutes=5)

    server.apply_settings(Settings(session_ttl=30))
    assert server.sessions.ttl == timedelta(seconds=30)
    session = server.create_session()
    assert session.expires_at - session.created_at == timedelta(seconds=30)


@pytest.mark.anyio
async def test_run_stops_waiting_for_handlers_after_shutdown_timeout():
    server = Server("drain")
    started = anyio.Event()

    @server.call_tool(validate_input=False)
    async def call_tool(name: str, args: dict[str, Any]) -> Any:
        started.set()
        await anyio.sleep_forever()

    client_send, server_read = anyio.create_memory_object_stream[SessionMessage | Exception](10)
    server_send, client_read = anyio.create_memory_object_stream[SessionMessage](10)

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            tg.start_soon(lambda: server.run(server_read, server_send, stateless=True, shutdown_timeout=0.1))
            await client_send.send(SessionMessage(types.Request(id=1, method=types.CALL_TOOL, params={"name": "x"})))
            await started.wait()
            client_send.close()

    client_read.close()
