import json
from unittest.mock import AsyncMock, MagicMock

import anyio
import pytest

from aiohttp_mcp_bridge import StreamSink
from aiohttp_mcp_bridge.exceptions import SinkClosedError
from aiohttp_mcp_bridge.types import EventSourceResponse, Frame

# Set the pytest marker for async tests/fixtures
pytestmark = pytest.mark.anyio


def create_mock_response() -> MagicMock:
    response = MagicMock()
    response.send = AsyncMock()
    response.write = AsyncMock()
    return response


class RecordingResponse(EventSourceResponse):
    """SSE response recording the bytes that would go on the wire."""

    def __init__(self) -> None:
        super().__init__(sep="\n")
        self.written = bytearray()

    async def write(self, data: bytes | bytearray | memoryview) -> None:
        self.written.extend(data)


async def test_send_message_sends_one_data_event() -> None:
    response = create_mock_response()
    sink = StreamSink("abc", response)

    await sink.send_message({"jsonrpc": "2.0", "id": "abc", "result": {}})

    response.send.assert_awaited_once()
    (data,) = response.send.await_args.args
    assert json.loads(data) == {"jsonrpc": "2.0", "id": "abc", "result": {}}


async def test_verbatim_frame_written_untouched() -> None:
    response = create_mock_response()
    sink = StreamSink("abc", response)

    await sink.send_frame(Frame(data="data: {}\n\n", verbatim=True))

    response.write.assert_awaited_once_with(b"data: {}\n\n")
    response.send.assert_not_awaited()


async def test_send_comment_writes_heartbeat() -> None:
    response = create_mock_response()
    sink = StreamSink("abc", response)

    await sink.send_comment()

    response.write.assert_awaited_once_with(b":\n\n")


async def test_closed_sink_rejects_writes() -> None:
    response = create_mock_response()
    sink = StreamSink("abc", response)
    sink.close()

    with pytest.raises(SinkClosedError):
        await sink.send_message({})
    with pytest.raises(SinkClosedError):
        await sink.send_comment()
    response.send.assert_not_awaited()
    response.write.assert_not_awaited()


@pytest.mark.parametrize("error", [ConnectionResetError("reset"), RuntimeError("write after EOF")])
async def test_lost_connection_closes_sink(error: Exception) -> None:
    response = create_mock_response()
    response.write.side_effect = error
    sink = StreamSink("abc", response)

    with pytest.raises(SinkClosedError):
        await sink.send_comment()

    assert sink.closed
    with pytest.raises(SinkClosedError):
        await sink.send_frame(Frame(data="x"))


async def test_concurrent_writes_do_not_interleave() -> None:
    log: list[str] = []

    async def slow_send(data: str) -> None:
        log.append(f"start {data}")
        await anyio.sleep(0.01)
        log.append(f"end {data}")

    response = create_mock_response()
    response.send.side_effect = slow_send
    sink = StreamSink("abc", response)

    async with anyio.create_task_group() as tg:
        for name in ("one", "two", "three"):
            tg.start_soon(sink.send_frame, Frame(data=name))

    assert len(log) == 6
    for start, end in zip(log[::2], log[1::2]):
        assert start.removeprefix("start ") == end.removeprefix("end ")


@pytest.mark.parametrize(
    ("frame", "wire"),
    [
        (Frame(data='{"jsonrpc":"2.0","result":{}}'), b'data: {"jsonrpc":"2.0","result":{}}\n\n'),
        (Frame(data="upstream says hello"), b"data: upstream says hello\n\n"),
        (Frame(data="line one\nline two"), b"data: line one\ndata: line two\n\n"),
        (Frame(data='data: {"n":1}\n\n', verbatim=True), b'data: {"n":1}\n\n'),
    ],
)
async def test_frame_wire_format(frame: Frame, wire: bytes) -> None:
    response = RecordingResponse()
    sink = StreamSink("abc", response)

    await sink.send_frame(frame)

    assert bytes(response.written) == wire


async def test_message_and_heartbeat_wire_format() -> None:
    response = RecordingResponse()
    sink = StreamSink("abc", response)

    await sink.send_message({"text": "héllo"})
    await sink.send_comment()

    assert bytes(response.written) == 'data: {"text":"héllo"}\n\n:\n\n'.encode()
