import json

import anyio
import pytest

from mcpkit.shared.exceptions import McpError, StreamClosedError
from mcpkit.shared.stream import StreamPipe
from mcpkit.types import ChunkType, Progress, ProgressState


@pytest.mark.anyio
async def test_chunks_arrive_in_order():
    pipe = StreamPipe()
    await pipe.write_data({"n": 1})
    await pipe.write_progress(Progress(id="p", state=ProgressState.STARTED))
    await pipe.write_error(McpError.of(400, "bad"))
    await pipe.write_complete()

    chunks = [chunk async for chunk in pipe]
    assert [chunk.type for chunk in chunks] == [
        ChunkType.DATA,
        ChunkType.PROGRESS,
        ChunkType.ERROR,
        ChunkType.COMPLETE,
    ]
    assert json.loads(chunks[0].data or "") == {"n": 1}
    assert chunks[2].error is not None and chunks[2].error.code == 400


@pytest.mark.anyio
async def test_str_and_bytes_are_raw_json():
    pipe = StreamPipe()
    await pipe.write_data('{"raw":true}')
    await pipe.write_data(b"[1,2]")
    assert (await pipe.read()).to_json() == '{"type":"data","data":{"raw":true}}'
    assert (await pipe.read()).to_json() == '{"type":"data","data":[1,2]}'


@pytest.mark.anyio
async def test_write_after_complete_fails():
    pipe = StreamPipe()
    await pipe.write_complete()
    assert pipe.closed
    with pytest.raises(StreamClosedError):
        await pipe.write_data(1)


@pytest.mark.anyio
async def test_buffered_chunks_survive_close_writer():
    pipe = StreamPipe()
    await pipe.write_data(1)
    pipe.close_writer()

    assert (await pipe.read()).data == "1"
    with pytest.raises(StreamClosedError):
        await pipe.read()


@pytest.mark.anyio
async def test_close_wakes_blocked_reader():
    pipe = StreamPipe()
    errors: list[Exception] = []

    async def reader():
        try:
            await pipe.read()
        except StreamClosedError as exc:
            errors.append(exc)

    async with anyio.create_task_group() as tg:
        tg.start_soon(reader)
        await anyio.sleep(0.01)
        pipe.close()

    assert len(errors) == 1
    with pytest.raises(StreamClosedError):
        await pipe.read()
    with pytest.raises(StreamClosedError):
        await pipe.write_complete()


@pytest.mark.anyio
async def test_writer_blocks_when_buffer_full():
    pipe = StreamPipe(max_buffer_size=1)
    await pipe.write_data(1)

    with anyio.move_on_after(0.05) as scope:
        await pipe.write_data(2)
    assert scope.cancelled_caught

    await pipe.read()
    with anyio.fail_after(1):
        await pipe.write_data(3)


@pytest.mark.anyio
async def test_context_manager_closes():
    async with StreamPipe() as pipe:
        await pipe.write_data(1)
    assert pipe.closed
    with pytest.raises(StreamClosedError):
        await pipe.read()
