"""PUSH and PULL sockets, plus the fair queue shared by receiving sockets."""

from __future__ import annotations

import asyncio
import collections
import logging
from typing import Callable, Sequence, Union

from zmqlite.base import Socket, SocketType
from zmqlite.transport import FramedIo
from zmqlite.util import PeerIdentity, ReturnToSenderError, ZmqError

_log = logging.getLogger(__name__)

MessageLike = Union[str, bytes, bytearray, memoryview, Sequence[Union[str, bytes]]]

_closing: set[asyncio.Task] = set()


def _as_frames(message: MessageLike) -> list[bytes]:
    """Normalise a message into a non-empty list of byte frames."""
    if isinstance(message, str):
        return [message.encode("utf-8")]
    if isinstance(message, (bytes, bytearray, memoryview)):
        return [bytes(message)]
    frames = [
        frame.encode("utf-8") if isinstance(frame, str) else bytes(frame) for frame in message
    ]
    if not frames:
        raise ZmqError("Cannot send an empty message")
    return frames


def _close_soon(framed: FramedIo) -> None:
    """Close a connection in the background, keeping the task referenced."""
    task = asyncio.ensure_future(framed.close())
    _closing.add(task)
    task.add_done_callback(_closing.discard)


class _FairQueue:
    """Merges the incoming streams of many peers into one queue."""

    def __init__(self, on_closed: Callable[[PeerIdentity], None]) -> None:
        self._items: asyncio.Queue = asyncio.Queue()
        self._readers: dict[PeerIdentity, asyncio.Task] = {}
        self._on_closed = on_closed

    def insert(self, peer_id: PeerIdentity, framed: FramedIo) -> None:
        self.remove(peer_id)
        self._readers[peer_id] = asyncio.ensure_future(self._pump(peer_id, framed))

    def _forget_current(self, peer_id: PeerIdentity) -> None:
        if self._readers.get(peer_id) is asyncio.current_task():
            del self._readers[peer_id]

    async def _pump(self, peer_id: PeerIdentity, framed: FramedIo) -> None:
        while True:
            try:
                item = await framed.recv()
            except (ZmqError, OSError) as exc:
                self._forget_current(peer_id)
                self._items.put_nowait((peer_id, exc))
                return
            if item is None:
                self._forget_current(peer_id)
                self._on_closed(peer_id)
                return
            self._items.put_nowait((peer_id, item))

    async def next_message(
        self, disconnect: Callable[[PeerIdentity], None]
    ) -> tuple[PeerIdentity, list[bytes]]:
        """Wait for the next message frame list, skipping commands.

        A read error disconnects the offending peer and is raised.
        """
        while True:
            peer_id, item = await self._items.get()
            if isinstance(item, BaseException):
                disconnect(peer_id)
                if isinstance(item, ZmqError):
                    raise item
                raise ZmqError(f"Connection error: {item}") from item
            if isinstance(item, list):
                return peer_id, item

    def remove(self, peer_id: PeerIdentity) -> None:
        task = self._readers.pop(peer_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def clear(self) -> None:
        tasks = list(self._readers.values())
        self._readers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class _PeerSocket(Socket):
    """A socket that keeps one framed connection per connected peer."""

    def __init__(self, peer_id=None) -> None:
        super().__init__(peer_id)
        self._peers: dict[PeerIdentity, FramedIo] = {}

    def _peer_disconnected(self, peer_id: PeerIdentity) -> None:
        framed = self._peers.pop(peer_id, None)
        if framed is not None:
            _close_soon(framed)
        super()._peer_disconnected(peer_id)

    async def _release_peers(self) -> None:
        peers = list(self._peers.values())
        self._peers.clear()
        for framed in peers:
            await framed.close()

    async def close(self) -> None:
        await super().close()
        await self._release_peers()


class _FairQueueSocket(_PeerSocket):
    """A socket that receives fairly from every connected peer."""

    def __init__(self, peer_id=None) -> None:
        super().__init__(peer_id)
        self._fair_queue = _FairQueue(self._peer_disconnected)

    async def _peer_connected(self, peer_id: PeerIdentity, framed: FramedIo) -> None:
        self._peers[peer_id] = framed
        self._fair_queue.insert(peer_id, framed)

    def _peer_disconnected(self, peer_id: PeerIdentity) -> None:
        self._fair_queue.remove(peer_id)
        super()._peer_disconnected(peer_id)

    async def _next_message(self) -> list[bytes]:
        _, message = await self._fair_queue.next_message(self._peer_disconnected)
        return message

    async def _release_peers(self) -> None:
        await self._fair_queue.clear()
        await super()._release_peers()


class PushSocket(_PeerSocket):
    """Sends each message to one connected peer, in round-robin order."""

    socket_type = SocketType.PUSH

    def __init__(self, peer_id=None) -> None:
        super().__init__(peer_id)
        self._round_robin: collections.deque[PeerIdentity] = collections.deque()

    async def _peer_connected(self, peer_id: PeerIdentity, framed: FramedIo) -> None:
        self._peers[peer_id] = framed
        self._round_robin.append(peer_id)

    async def send(self, message: MessageLike) -> None:
        """Send ``message`` to the next peer in turn."""
        frames = _as_frames(message)
        while self._round_robin:
            peer_id = self._round_robin.popleft()
            framed = self._peers.get(peer_id)
            if framed is None:
                continue
            self._round_robin.append(peer_id)
            try:
                await framed.send(frames)
            except ConnectionError as exc:
                _log.debug("Peer %r went away while sending: %s", peer_id, exc)
                self._peer_disconnected(peer_id)
                continue
            return
        raise ReturnToSenderError("Not connected to peers. Unable to send messages", frames)

    async def _release_peers(self) -> None:
        self._round_robin.clear()
        await super()._release_peers()


class PullSocket(_FairQueueSocket):
    """Receives messages fairly from all connected peers."""

    socket_type = SocketType.PULL

    async def recv(self) -> list[bytes]:
        """Return the next message as a list of frames."""
        return await self._next_message()