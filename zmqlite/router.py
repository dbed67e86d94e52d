"""ROUTER socket: addresses peers by identity."""

from __future__ import annotations

import logging

from zmqlite.base import Socket, SocketType
from zmqlite.pipeline import MessageLike, _as_frames, _close_soon, _FairQueue
from zmqlite.transport import FramedIo
from zmqlite.util import PeerIdentity, ZmqError

_log = logging.getLogger(__name__)


class RouterSocket(Socket):
    """Prefixes received messages with the sender's identity and routes replies by it."""

    socket_type = SocketType.ROUTER

    def __init__(self, peer_id=None) -> None:
        super().__init__(peer_id)
        self._peers: dict[PeerIdentity, FramedIo] = {}
        self._fair_queue = _FairQueue(self._peer_disconnected)

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

    async def recv(self) -> list[bytes]:
        """Return the next message with the sender's identity as its first frame.

        Peers whose connection fails are dropped and receiving continues.
        """
        while True:
            try:
                peer_id, message = await self._fair_queue.next_message(
                    self._peer_disconnected
                )
            except ZmqError as exc:
                _log.debug("Dropped a peer after a receive error: %s", exc)
                continue
            return [bytes(peer_id), *message]

    async def send(self, message: MessageLike) -> None:
        """Send ``message`` whose first frame names the destination peer."""
        frames = _as_frames(message)
        if len(frames) < 2:
            raise ZmqError("Message must hold a destination identity and a body")
        peer_id = PeerIdentity.from_bytes(frames[0])
        framed = self._peers.get(peer_id)
        if framed is None:
            raise ZmqError("Destination client not found by identity")
        await framed.send(frames[1:])

    async def close(self) -> None:
        peers = list(self._peers.values())
        await super().close()
        await self._fair_queue.clear()
        for framed in peers:
            await framed.close()