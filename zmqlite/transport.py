"""Endpoints, ZMTP framing and the TCP / IPC transports."""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import math
import os
import random
import socket
import sys
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence, Union

from zmqlite.task_handle import TaskHandle
from zmqlite.util import Greeting, ZmqError

_FLAG_MORE = 0x01
_FLAG_LONG = 0x02
_FLAG_COMMAND = 0x04
_GREETING_SIZE = 64
_SIGNATURE_START = b"\xff" + b"\x00" * 8 + b"\x7f"


@dataclass(frozen=True)
class TcpEndpoint:
    """A TCP endpoint: host name or address plus port."""

    host: str
    port: int

    def __str__(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"tcp://{host}:{self.port}"


@dataclass(frozen=True)
class IpcEndpoint:
    """A Unix domain socket endpoint; ``path`` is None for unnamed sockets."""

    path: str | None

    def __str__(self) -> str:
        return f"ipc://{self.path or ''}"


Endpoint = Union[TcpEndpoint, IpcEndpoint]


@dataclass(frozen=True)
class Command:
    """A ZMTP command frame; READY commands carry properties."""

    name: str
    properties: dict[str, bytes] = field(default_factory=dict)
    data: bytes = b""

    @classmethod
    def ready(cls, properties: dict[str, bytes]) -> Command:
        return cls("READY", dict(properties))


def parse_endpoint(text: str | Endpoint) -> Endpoint:
    """Parse ``tcp://host:port`` or ``ipc://path`` into an endpoint."""
    if isinstance(text, (TcpEndpoint, IpcEndpoint)):
        return text
    scheme, sep, rest = text.partition("://")
    if not sep:
        raise ZmqError(f"Invalid endpoint: {text!r}")
    if scheme == "tcp":
        host, colon, port_text = rest.rpartition(":")
        if not colon or not host:
            raise ZmqError(f"Invalid tcp endpoint: {text!r}")
        if host.startswith("[") and host.endswith("]"):
            host = host[1:-1]
        try:
            port = int(port_text)
        except ValueError:
            raise ZmqError(f"Invalid port in endpoint: {text!r}") from None
        if not 0 <= port <= 65535:
            raise ZmqError(f"Port out of range in endpoint: {text!r}")
        return TcpEndpoint(host, port)
    if scheme == "ipc":
        return IpcEndpoint(rest or None)
    raise ZmqError(f"Unsupported transport: {scheme!r}")


def _encode_frame(flags: int, body: bytes) -> bytes:
    if len(body) > 255:
        return bytes([flags | _FLAG_LONG]) + len(body).to_bytes(8, "big") + body
    return bytes([flags, len(body)]) + body


def _encode_greeting(greeting: Greeting) -> bytes:
    major, minor = greeting.version
    mechanism = greeting.mechanism.encode("ascii").ljust(20, b"\x00")[:20]
    return (
        _SIGNATURE_START
        + bytes([major, minor])
        + mechanism
        + bytes([1 if greeting.as_server else 0])
        + b"\x00" * 31
    )


def _decode_greeting(data: bytes) -> Greeting:
    if data[0] != 0xFF or data[9] != 0x7F:
        raise ZmqError("Invalid greeting signature")
    mechanism = data[12:32].rstrip(b"\x00").decode("ascii", errors="replace")
    return Greeting((data[10], data[11]), mechanism, bool(data[32]))


def _encode_command(command: Command) -> bytes:
    name = command.name.encode("ascii")
    if command.name == "READY":
        payload = b"".join(
            bytes([len(key.encode())]) + key.encode() + len(value).to_bytes(4, "big") + value
            for key, value in command.properties.items()
        )
    else:
        payload = command.data
    return bytes([len(name)]) + name + payload


def _decode_command(body: bytes) -> Command:
    if not body:
        raise ZmqError("Empty command frame")
    name_len = body[0]
    if len(body) < 1 + name_len:
        raise ZmqError("Truncated command name")
    name = body[1 : 1 + name_len].decode("ascii", errors="replace")
    data = body[1 + name_len :]
    if name != "READY":
        return Command(name, data=data)
    properties: dict[str, bytes] = {}
    offset = 0
    while offset < len(data):
        key_len = data[offset]
        key_end = offset + 1 + key_len
        if key_end + 4 > len(data):
            raise ZmqError("Truncated command property")
        key = data[offset + 1 : key_end].decode("ascii", errors="replace")
        value_len = int.from_bytes(data[key_end : key_end + 4], "big")
        value_end = key_end + 4 + value_len
        if value_end > len(data):
            raise ZmqError("Truncated command property value")
        properties[key] = data[key_end + 4 : value_end]
        offset = value_end
    return Command(name, properties)


class FramedIo:
    """Reads and writes ZMTP greetings, commands and multipart messages."""

    def __init__(self, reader: asyncio.StreamReader, writer) -> None:
        self._reader = reader
        self._writer = writer
        self._greeting_received = False

    async def send(self, frames: Greeting | Command | Sequence[bytes]) -> None:
        """Send a greeting, a command or a message given as a list of frames."""
        if isinstance(frames, Greeting):
            data = _encode_greeting(frames)
        elif isinstance(frames, Command):
            data = _encode_frame(_FLAG_COMMAND, _encode_command(frames))
        else:
            parts = [bytes(frame) for frame in frames]
            if not parts:
                raise ZmqError("Cannot send an empty message")
            last = len(parts) - 1
            data = b"".join(
                _encode_frame(0 if index == last else _FLAG_MORE, part)
                for index, part in enumerate(parts)
            )
        self._writer.write(data)
        await self._writer.drain()

    async def recv(self) -> Greeting | Command | list[bytes] | None:
        """Receive the next item; None when the peer closed the stream cleanly."""
        frames: list[bytes] = []
        started = False
        try:
            if not self._greeting_received:
                data = await self._reader.readexactly(_GREETING_SIZE)
                self._greeting_received = True
                return _decode_greeting(data)
            while True:
                flags = (await self._reader.readexactly(1))[0]
                started = True
                if flags & ~(_FLAG_MORE | _FLAG_LONG | _FLAG_COMMAND):
                    raise ZmqError("Invalid frame flags")
                size_len = 8 if flags & _FLAG_LONG else 1
                size = int.from_bytes(await self._reader.readexactly(size_len), "big")
                body = await self._reader.readexactly(size)
                if flags & _FLAG_COMMAND:
                    if frames:
                        raise ZmqError("Command frame inside a message")
                    return _decode_command(body)
                frames.append(body)
                if not flags & _FLAG_MORE:
                    return frames
        except asyncio.IncompleteReadError as exc:
            if not started and not frames and not exc.partial:
                return None
            raise ZmqError("Connection closed in the middle of a frame") from exc

    async def close(self) -> None:
        """Close the underlying stream."""
        self._writer.close()
        with contextlib.suppress(Exception):
            await self._writer.wait_closed()


class AcceptStopHandle:
    """Stops a listening task started by begin_accept."""

    def __init__(self, handle: TaskHandle) -> None:
        self._handle = handle

    async def stop(self) -> None:
        await self._handle.shutdown()


AcceptCallback = Callable[[FramedIo, Endpoint], Awaitable[None]]


def _set_nodelay(writer) -> None:
    sock = writer.get_extra_info("socket")
    if sock is not None and sys.platform != "win32":
        with contextlib.suppress(OSError):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)


def _ipc_endpoint(address) -> IpcEndpoint:
    return IpcEndpoint(address if isinstance(address, str) and address else None)


async def connect(endpoint: str | Endpoint) -> tuple[FramedIo, Endpoint]:
    """Open a connection to ``endpoint`` and return it with the peer's endpoint."""
    endpoint = parse_endpoint(endpoint)
    if isinstance(endpoint, TcpEndpoint):
        reader, writer = await asyncio.open_connection(endpoint.host, endpoint.port)
        _set_nodelay(writer)
        peer = writer.get_extra_info("peername")
        return FramedIo(reader, writer), TcpEndpoint(peer[0], peer[1])
    if endpoint.path is None:
        raise ZmqError("Cannot connect to an unnamed ipc socket")
    reader, writer = await asyncio.open_unix_connection(endpoint.path)
    return FramedIo(reader, writer), _ipc_endpoint(writer.get_extra_info("peername"))


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


async def begin_accept(
    endpoint: str | Endpoint, callback: AcceptCallback
) -> tuple[Endpoint, AcceptStopHandle]:
    """Listen on ``endpoint``, calling ``callback`` for each accepted connection.

    Returns the resolved endpoint actually bound and a handle that stops
    listening.
    """
    endpoint = parse_endpoint(endpoint)
    stop_event = asyncio.Event()

    if isinstance(endpoint, TcpEndpoint):

        async def handle_tcp(reader, writer) -> None:
            _set_nodelay(writer)
            peer = writer.get_extra_info("peername")
            await callback(FramedIo(reader, writer), TcpEndpoint(peer[0], peer[1]))

        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(
            endpoint.host, endpoint.port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
        )
        if not infos:
            raise ZmqError(f"Cannot resolve host {endpoint.host!r}")
        family, kind, proto, _, address = infos[0]
        sock = socket.socket(family, kind, proto)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(address)
            sock.setblocking(False)
            server = await asyncio.start_server(handle_tcp, sock=sock)
        except BaseException:
            sock.close()
            raise
        bound = sock.getsockname()
        host = bound[0] if _is_ip_literal(endpoint.host) else endpoint.host
        resolved: Endpoint = TcpEndpoint(host, bound[1])
        remove_path = None
    else:
        if endpoint.path is None:
            raise ZmqError("Cannot begin accepting peers at an unnamed ipc socket")
        if endpoint.path == "*":
            raise ZmqError("Wildcard ipc paths are not supported")

        async def handle_ipc(reader, writer) -> None:
            peer = writer.get_extra_info("peername")
            await callback(FramedIo(reader, writer), _ipc_endpoint(peer))

        server = await asyncio.start_unix_server(handle_ipc, path=endpoint.path)
        resolved = IpcEndpoint(endpoint.path)
        remove_path = endpoint.path

    async def serve() -> None:
        await stop_event.wait()
        server.close()
        if remove_path is not None:
            with contextlib.suppress(OSError):
                os.remove(remove_path)

    task = asyncio.ensure_future(serve())
    return resolved, AcceptStopHandle(TaskHandle(stop_event, task))


async def connect_forever(endpoint: str | Endpoint) -> tuple[FramedIo, Endpoint]:
    """Connect, retrying with growing delays while the connection is refused."""
    attempt = 0
    while True:
        try:
            return await connect(endpoint)
        except ConnectionRefusedError:
            if attempt < 5:
                attempt += 1
            await asyncio.sleep(math.exp(attempt / 3.0) + random.uniform(0.0, 0.1))