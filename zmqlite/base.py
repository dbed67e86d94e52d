"""Socket types, the connection handshake and the common socket base."""

from __future__ import annotations

import asyncio
import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import ClassVar

from zmqlite.transport import (
    AcceptStopHandle,
    Command,
    Endpoint,
    FramedIo,
    begin_accept,
    connect_forever,
    parse_endpoint,
)
from zmqlite.util import Greeting, PeerIdentity, ZmqError, negotiate_version


class SocketType(enum.Enum):
    """ZMTP socket types, valued by their wire names."""

    PAIR = "PAIR"
    PUB = "PUB"
    SUB = "SUB"
    REQ = "REQ"
    REP = "REP"
    DEALER = "DEALER"
    ROUTER = "ROUTER"
    PULL = "PULL"
    PUSH = "PUSH"
    XPUB = "XPUB"
    XSUB = "XSUB"

    def compatible(self, other: SocketType) -> bool:
        """Whether a socket of this type may talk to one of ``other``."""
        return other in _COMPATIBLE[self]


_COMPATIBLE: dict[SocketType, frozenset[SocketType]] = {
    SocketType.PAIR: frozenset({SocketType.PAIR}),
    SocketType.PUB: frozenset({SocketType.SUB, SocketType.XSUB}),
    SocketType.SUB: frozenset({SocketType.PUB, SocketType.XPUB}),
    SocketType.REQ: frozenset({SocketType.REP, SocketType.ROUTER}),
    SocketType.REP: frozenset({SocketType.REQ, SocketType.DEALER}),
    SocketType.DEALER: frozenset({SocketType.REP, SocketType.DEALER, SocketType.ROUTER}),
    SocketType.ROUTER: frozenset({SocketType.REQ, SocketType.DEALER, SocketType.ROUTER}),
    SocketType.PULL: frozenset({SocketType.PUSH}),
    SocketType.PUSH: frozenset({SocketType.PULL}),
    SocketType.XPUB: frozenset({SocketType.SUB, SocketType.XSUB}),
    SocketType.XSUB: frozenset({SocketType.PUB, SocketType.XPUB}),
}


class EventKind(enum.Enum):
    LISTENING = "listening"
    ACCEPTED = "accepted"
    ACCEPT_FAILED = "accept_failed"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


@dataclass(frozen=True)
class SocketEvent:
    """Something that happened to a socket, reported through monitor()."""

    kind: EventKind
    endpoint: Endpoint | None = None
    peer_id: PeerIdentity | None = None


async def greet_exchange(framed: FramedIo) -> tuple[int, int]:
    """Exchange greetings and return the negotiated protocol version."""
    await framed.send(Greeting())
    greeting = await framed.recv()
    if greeting is None:
        raise ZmqError("Failed Greeting exchange")
    return negotiate_version(greeting)


async def ready_exchange(
    framed: FramedIo, socket_type: SocketType, identity: PeerIdentity | None
) -> PeerIdentity:
    """Exchange READY commands and return the peer's identity."""
    properties = {"Socket-Type": socket_type.value.encode("ascii")}
    if identity is not None:
        properties["Identity"] = bytes(identity)
    await framed.send(Command.ready(properties))
    reply = await framed.recv()
    if reply is None:
        raise ZmqError("No reply from server")
    if not isinstance(reply, Command) or reply.name != "READY":
        raise ZmqError("Failed to confirm ready state")
    raw_type = reply.properties.get("Socket-Type")
    if raw_type is None:
        raise ZmqError("Failed to parse other socket type")
    try:
        other_type = SocketType(raw_type.decode("ascii"))
    except (UnicodeDecodeError, ValueError):
        raise ZmqError("Failed to parse other socket type") from None
    raw_identity = reply.properties.get("Identity")
    peer_id = PeerIdentity.from_bytes(raw_identity) if raw_identity is not None else PeerIdentity.new()
    if not socket_type.compatible(other_type):
        raise ZmqError("Provided sockets combination is not compatible")
    return peer_id


class Socket(ABC):
    """Common behaviour of all sockets: binding, connecting and monitoring."""

    socket_type: ClassVar[SocketType]

    def __init__(self, peer_id: PeerIdentity | bytes | str | None = None) -> None:
        if isinstance(peer_id, str):
            peer_id = PeerIdentity.from_str(peer_id)
        elif isinstance(peer_id, (bytes, bytearray)):
            peer_id = PeerIdentity.from_bytes(peer_id)
        self.peer_id: PeerIdentity | None = peer_id
        self.binds: dict[Endpoint, AcceptStopHandle] = {}
        self._monitor: asyncio.Queue[SocketEvent] | None = None

    @abstractmethod
    async def _peer_connected(self, peer_id: PeerIdentity, framed: FramedIo) -> None:
        """Take ownership of a connection that finished its handshake."""

    def _peer_disconnected(self, peer_id: PeerIdentity) -> None:
        self._emit(SocketEvent(EventKind.DISCONNECTED, peer_id=peer_id))

    def _shutdown(self) -> None:
        """Drop all peers; called when the socket is closed."""

    def _emit(self, event: SocketEvent) -> None:
        if self._monitor is not None:
            try:
                self._monitor.put_nowait(event)
            except asyncio.QueueFull:
                pass

    async def _handshake(self, framed: FramedIo) -> PeerIdentity:
        await greet_exchange(framed)
        peer_id = await ready_exchange(framed, self.socket_type, self.peer_id)
        await self._peer_connected(peer_id, framed)
        return peer_id

    async def bind(self, endpoint: str | Endpoint) -> Endpoint:
        """Listen on ``endpoint`` and return the endpoint actually bound."""

        async def on_accept(framed: FramedIo, remote: Endpoint) -> None:
            try:
                peer_id = await self._handshake(framed)
            except (ZmqError, OSError):
                self._emit(SocketEvent(EventKind.ACCEPT_FAILED, remote))
                await framed.close()
                return
            self._emit(SocketEvent(EventKind.ACCEPTED, remote, peer_id))

        resolved, handle = await begin_accept(parse_endpoint(endpoint), on_accept)
        self.binds[resolved] = handle
        self._emit(SocketEvent(EventKind.LISTENING, resolved))
        return resolved

    async def connect(self, endpoint: str | Endpoint) -> None:
        """Connect to ``endpoint`` and complete the handshake."""
        framed, remote = await connect_forever(parse_endpoint(endpoint))
        try:
            peer_id = await self._handshake(framed)
        except BaseException:
            await framed.close()
            raise
        self._emit(SocketEvent(EventKind.CONNECTED, remote, peer_id))

    async def unbind(self, endpoint: str | Endpoint) -> None:
        """Stop listening on a previously bound endpoint."""
        handle = self.binds.pop(parse_endpoint(endpoint), None)
        if handle is None:
            raise ZmqError(f"Not bound to {endpoint}")
        await handle.stop()

    def monitor(self) -> asyncio.Queue[SocketEvent]:
        """Return a queue that receives this socket's events from now on."""
        self._monitor = asyncio.Queue(maxsize=1024)
        return self._monitor

    async def close(self) -> None:
        """Stop all listeners and drop all peers."""
        handles = list(self.binds.values())
        self.binds.clear()
        for handle in handles:
            await handle.stop()
        self._shutdown()
        self._emit(SocketEvent(EventKind.CLOSED))

    async def __aenter__(self) -> Socket:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()