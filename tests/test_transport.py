import asyncio

import pytest

from zmqlite.transport import (
    Command,
    FramedIo,
    IpcEndpoint,
    TcpEndpoint,
    begin_accept,
    connect,
    connect_forever,
    parse_endpoint,
)
from zmqlite.util import Greeting, ZmqError


class _Writer:
    def __init__(self):
        self.data = bytearray()

    def write(self, data):
        self.data += data

    async def drain(self):
        pass

    def close(self):
        pass

    async def wait_closed(self):
        pass


def _decoder(data):
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return FramedIo(reader, _Writer())


async def _encode(*items):
    framed = _decoder(b"")
    for item in items:
        await framed.send(item)
    return bytes(framed_writer_data(framed))


def framed_writer_data(framed):
    return framed_writer(framed).data


def framed_writer(framed):
    return _WRITERS[id(framed)] if id(framed) in _WRITERS else _find_writer(framed)


_WRITERS = {}


def _find_writer(framed):
    for value in vars(framed).values():
        if isinstance(value, _Writer):
            return value
    raise AssertionError("writer not found")


async def _close_on_accept(framed, remote):
    await framed.close()


@pytest.mark.parametrize(
    "text",
    ["tcp://localhost:5555", "tcp://127.0.0.1:0", "tcp://[::1]:80", "ipc://some.sock"],
)
def test_parse_endpoint_round_trip(text):
    assert str(parse_endpoint(text)) == text


@pytest.mark.parametrize(
    "text, expected",
    [("tcp://[::1]:80", TcpEndpoint("::1", 80)), ("ipc://", IpcEndpoint(None))],
)
def test_parse_endpoint_fields(text, expected):
    assert parse_endpoint(text) == expected


@pytest.mark.parametrize(
    "text", ["localhost:5555", "udp://host:1", "tcp://host", "tcp://host:abc", "tcp://h:70000"]
)
def test_parse_endpoint_errors(text):
    with pytest.raises(ZmqError):
        parse_endpoint(text)


@pytest.mark.asyncio
async def test_single_frame_wire_bytes():
    assert await _encode([b"abc"]) == b"\x00\x03abc"


@pytest.mark.asyncio
async def test_greeting_wire_and_round_trip():
    data = await _encode(Greeting())
    assert len(data) == 64
    assert data[0] == 0xFF and data[9] == 0x7F
    assert await _decoder(data).recv() == Greeting()


@pytest.mark.asyncio
async def test_messages_and_commands_round_trip():
    long_frame = b"x" * 300
    command = Command.ready({"Socket-Type": b"REQ", "Identity": b"me"})
    items = [Greeting(), [b"a", b"", long_frame], command, [b"z"]]
    framed = _decoder(await _encode(*items))
    assert [await framed.recv() for _ in items] == items
    assert await framed.recv() is None


@pytest.mark.asyncio
async def test_empty_message_rejected():
    with pytest.raises(ZmqError):
        await _decoder(b"").send([])


@pytest.mark.asyncio
async def test_truncated_frame_is_error():
    data = await _encode(Greeting(), [b"hello"])
    framed = _decoder(data[:-2])
    await framed.recv()
    with pytest.raises(ZmqError):
        await framed.recv()


@pytest.mark.asyncio
async def test_bad_signature_is_error():
    data = bytearray(await _encode(Greeting()))
    data[0] = 0
    with pytest.raises(ZmqError):
        await _decoder(bytes(data)).recv()


@pytest.mark.asyncio
async def test_tcp_accept_and_connect_exchange():
    received = asyncio.get_running_loop().create_future()

    async def on_accept(framed, remote):
        await framed.send(Greeting())
        received.set_result((await framed.recv(), await framed.recv(), remote))

    endpoint, handle = await begin_accept("tcp://127.0.0.1:0", on_accept)
    assert endpoint.host == "127.0.0.1" and endpoint.port > 0
    framed, peer = await connect_forever(endpoint)
    assert peer == endpoint
    await framed.send(Greeting())
    await framed.send([b"ping", b"pong"])
    assert await framed.recv() == Greeting()
    greeting, message, remote = await asyncio.wait_for(received, 5)
    assert greeting == Greeting()
    assert message == [b"ping", b"pong"]
    assert remote.host == "127.0.0.1"
    await framed.close()
    await handle.stop()


@pytest.mark.asyncio
async def test_connect_refused_after_stop():
    endpoint, handle = await begin_accept("tcp://127.0.0.1:0", _close_on_accept)
    await handle.stop()
    await asyncio.sleep(0.05)
    with pytest.raises(ConnectionRefusedError):
        await connect(endpoint)


@pytest.mark.asyncio
async def test_ipc_bind_removes_file_on_stop(tmp_path):
    socket_file = tmp_path / "s.sock"
    endpoint, handle = await begin_accept(f"ipc://{socket_file}", _close_on_accept)
    assert endpoint == IpcEndpoint(str(socket_file))
    assert socket_file.exists()
    await handle.stop()
    assert not socket_file.exists()


@pytest.mark.asyncio
async def test_ipc_unnamed_connect_error():
    with pytest.raises(ZmqError):
        await connect("ipc://")


@pytest.mark.parametrize("text", ["ipc://", "ipc://*"])
@pytest.mark.asyncio
async def test_ipc_unnamed_and_wildcard_bind_errors(text):
    with pytest.raises(ZmqError):
        await begin_accept(text, _close_on_accept)