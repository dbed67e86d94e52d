"""REQ and REP sockets: strict request/reply exchanges."""

from __future__ import annotations

import collections
import logging

from zmqlite.base import Socket, SocketType
from zmqlite.pipeline import MessageLike, _as_frames, _close_soon, _FairQueue
from zmqlite.transport import Command, FramedIo
from zmqlite.util import (
    Greeting,
    NoMessageError,
    PeerIdentity,
    ReturnToSenderError,
    ZmqError,
)

_log = logging.getLogger(__name__)


class ReqSocket(Socket):
    """Sends one request at a time, round-robin over peers, and awaits the reply."""

    socket_type = SocketType.REQ

    def __init__(self, peer_id=None) -> None:
        super().__init__(peer_id)
        self._peers: dict[PeerIdentity, FramedIo] = {}
        self._round_robin: collections.deque[PeerIdentity] = collections.deque()
        self._current_request: PeerIdentity | None = None

    async def _peer_connected(self, peer_id: PeerIdentity, framed: FramedIo) -> None:
        self._peers[peer_id] = framed
        self._round_robin.append(peer_id)

    def _peer_disconnected(self, peer_id: PeerIdentity) -> None:
        framed = self._peers.pop(peer_id, None)
        if framed is not None:
            _close_soon(framed)
        super()._peer_disconnected(peer_id)

    def _shutdown(self) -> None:
        self._peers.clear()

    async def send(self, message: MessageLike) -> None:
        """Send a request to the next peer; only one request may be in flight."""
        frames = _as_frames(message)
        if self._current_request is not None:
            raise ReturnToSenderError(
                "Unable to send message. Request already in progress", frames
            )
        # Identities of peers that went away may linger in the rotation;
        # they are skipped and dropped here.
        while self._round_robin:
            peer_id = self._round_robin.popleft()
            framed = self._peers.get(peer_id)
            if framed is None:
                continue
            self._round_robin.append(peer_id)
            await framed.send([b"", *frames])
            self._current_request = peer_id
            return
        raise ReturnToSenderError("Not connected to peers. Unable to send messages", frames)

    async def recv(self) -> list[bytes]:
        """Wait for the reply to the request in progress."""
        peer_id = self._current_request
        self._current_request = None
        if peer_id is None:
            raise ZmqError("Unable to recv. No request in progress")
        framed = self._peers.get(peer_id)
        if framed is None:
            raise ZmqError("Server disconnected")
        try:
            item = await framed.recv()
        except OSError as exc:
            raise ZmqError(f"Connection error: {exc}") from exc
        if item is None:
            raise NoMessageError()
        if isinstance(item, (Greeting, Command)):
            raise ZmqError("Received non-message frame")
        if len(item) < 2:
            raise ZmqError("Invalid message format: too few frames")
        if item[0]:
            raise ZmqError("Invalid message format: missing delimiter")
        return item[1:]

    async def close(self) -> None:
        peers = list(self._peers.values())
        await super().close()
        self._round_robin.clear()
        self._current_request = None
        for framed in peers:
            await framed.close()


class RepSocket(Socket):
    """Receives requests fairly from all peers and answers each one in turn."""

    socket_type = SocketType.REP

    def __init__(self, peer_id=None) -> None:
        super().__init__(peer_id)
        self._peers: dict[PeerIdentity, FramedIo] = {}
        self._fair_queue = _FairQueue(self._peer_disconnected)
        self._envelope: list[bytes] | None = None
        self._current_request: PeerIdentity | None = None

    async def _peer_connected(self, peer_id: PeerIdentity, framed: FramedIo) -> None:
        self._peers[peer_id] = framed
        self._fair_queue.insert(peer_id, framed)

    def _peer_disconnected(self, peer_id: PeerIdentity) -> None:
        self._fair_queue.remove(peer_id)
        framed = self._peers.pop(peer_id, None)
        if framed is not None:
            _close_soon(framed)
        super()._peer_disconnected(peer_id)

    def _shutdown(self) -> None:
        self._peers.clear()

    async def send(self, message: MessageLike) -> None:
        """Send the reply to the request most recently received."""
        frames = _as_frames(message)
        peer_id = self._current_request
        self._current_request = None
        if peer_id is None:
            raise ReturnToSenderError("Unable to send reply. No request in progress", frames)
        framed = self._peers.get(peer_id)
        if framed is None:
            raise ReturnToSenderError("Client disconnected", frames)
        envelope = self._envelope or []
        self._envelope = None
        await framed.send([*envelope, *frames])

    async def recv(self) -> list[bytes]:
        """Return the body of the next request, keeping its envelope for the reply."""
        peer_id, message = await self._fair_queue.next_message(self._peer_disconnected)
        if len(message) < 2:
            raise ZmqError("Invalid message format")
        at = next((index + 1 for index, frame in enumerate(message) if not frame), 1)
        self._envelope = message[:at]
        self._current_request = peer_id
        return message[at:]

    async def close(self) -> None:
        peers = list(self._peers.values())
        await super().close()
        await self._fair_queue.clear()
        self._envelope = None
        self._current_request = None
        for framed in peers:
            await framed.close()