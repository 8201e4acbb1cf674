from collections.abc import AsyncGenerator

import anyio
import pytest

import mcpkit.types as types
from mcpkit.client.websocket import WebSocketClient, frame_to_message, websocket_client
from mcpkit.server.websocket import WebSocketMessage, WebSocketServer, WebSocketStream, create_websocket_app
from tests.test_helpers import serving


async def silent(stream: WebSocketStream, message: WebSocketMessage) -> None:
    return None


async def announce(stream: WebSocketStream, message: WebSocketMessage) -> None:
    await stream.send(WebSocketMessage(type="announcement", payload=message.payload))


@pytest.fixture
async def ws_url(server_port: int) -> AsyncGenerator[str, None]:
    ws_server = WebSocketServer()
    ws_server.register_handler("silent", silent)
    ws_server.register_handler("announce", announce)
    async with serving(create_websocket_app(ws_server, middleware=[]), server_port) as address:
        yield f"ws://{address}/"


@pytest.mark.parametrize("url", ["http://127.0.0.1:8000/", "127.0.0.1:8000", "ftp://example.com"])
def test_rejects_non_websocket_urls(url: str):
    with pytest.raises(ValueError):
        WebSocketClient(url)


@pytest.mark.anyio
async def test_websocket_client_transport_rejects_bad_url():
    with pytest.raises(ValueError):
        async with websocket_client("http://127.0.0.1:8000/"):
            pass


@pytest.mark.anyio
async def test_send_and_wait_times_out(ws_url: str):
    async with WebSocketClient(ws_url) as client:
        with pytest.raises(TimeoutError):
            await client.send_and_wait(WebSocketMessage(type="silent", id=1), timeout=0.2)


@pytest.mark.anyio
async def test_handlers_receive_frames(ws_url: str):
    received = anyio.Event()
    frames: list[WebSocketMessage] = []

    async def on_announcement(frame: WebSocketMessage) -> None:
        frames.append(frame)
        received.set()

    async with WebSocketClient(ws_url) as client:
        client.register_handler("announcement", on_announcement)
        await client.send(WebSocketMessage(type="announce", payload={"text": "hi"}))
        with anyio.fail_after(5):
            await received.wait()

    assert frames[0].payload == {"text": "hi"}
    assert client.closed


@pytest.mark.anyio
async def test_send_and_wait_with_explicit_response_type(ws_url: str):
    async with WebSocketClient(ws_url) as client:
        reply = await client.send_and_wait(
            WebSocketMessage(type="announce", payload="hello"), response_type="announcement"
        )
    assert reply.payload == "hello"


def test_frame_to_message():
    response = frame_to_message(WebSocketMessage(type="listToolsResponse", payload=[], id=3))
    assert response == types.Response(id=3, result=[])

    error = frame_to_message(WebSocketMessage(type="error", payload={"code": 404, "message": "missing"}, id=4))
    assert isinstance(error, types.ErrorResponse)
    assert error.error.code == 404

    garbled = frame_to_message(WebSocketMessage(type="error", payload="oops", id=5))
    assert isinstance(garbled, types.ErrorResponse)
    assert garbled.error.code == types.INTERNAL_ERROR

    assert frame_to_message(WebSocketMessage(type="announcement", payload="hi")) is None
