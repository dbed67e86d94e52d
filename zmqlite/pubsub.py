"""PUB and SUB sockets with prefix-based subscriptions."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field

from zmqlite.base import Socket, SocketType
from zmqlite.pipeline import MessageLike, _as_frames, _close_soon, _FairQueueSocket
from zmqlite.transport import FramedIo
from zmqlite.util import PeerIdentity, ZmqError

_log = logging.getLogger(__name__)


class SubMessageType(enum.IntEnum):
    """First byte of a subscription control message."""

    UNSUBSCRIBE = 0
    SUBSCRIBE = 1


def _topic_bytes(subscription: str | bytes) -> bytes:
    if isinstance(subscription, str):
        return subscription.encode("utf-8")
    return bytes(subscription)


def create_subs_message(subscription: str | bytes, msg_type: SubMessageType) -> list[bytes]:
    """Build the single-frame message that (un)subscribes to ``subscription``."""
    return [bytes([int(msg_type)]) + _topic_bytes(subscription)]


@dataclass
class _Subscriber:
    framed: FramedIo
    subscriptions: list[bytes] = field(default_factory=list)
    reader: asyncio.Task | None = None


class PubSocket(Socket):
    """Publishes each message to every peer subscribed to a prefix of it."""

    socket_type = SocketType.PUB

    def __init__(self, peer_id=None) -> None:
        super().__init__(peer_id)
        self._subscribers: dict[PeerIdentity, _Subscriber] = {}

    async def _peer_connected(self, peer_id: PeerIdentity, framed: FramedIo) -> None:
        old = self._subscribers.pop(peer_id, None)
        if old is not None:
            self._drop(old)
        subscriber = _Subscriber(framed)
        self._subscribers[peer_id] = subscriber
        subscriber.reader = asyncio.ensure_future(self._read_subscriptions(peer_id, subscriber))

    async def _read_subscriptions(self, peer_id: PeerIdentity, subscriber: _Subscriber) -> None:
        while True:
            try:
                item = await subscriber.framed.recv()
            except (ZmqError, OSError) as exc:
                _log.debug("Error receiving message: %s", exc)
                break
            if item is None:
                break
            self._message_received(peer_id, item)
        if self._subscribers.get(peer_id) is subscriber:
            self._peer_disconnected(peer_id)

    def _message_received(self, peer_id: PeerIdentity, item) -> None:
        if not isinstance(item, list):
            return
        if len(item) != 1:
            _log.warning("Received message with unexpected length: %d", len(item))
            return
        data = item[0]
        if not data:
            return
        subscriber = self._subscribers.get(peer_id)
        if subscriber is None:
            return
        kind, topic = data[0], data[1:]
        if kind == SubMessageType.SUBSCRIBE:
            subscriber.subscriptions.append(topic)
        elif kind == SubMessageType.UNSUBSCRIBE:
            if topic in subscriber.subscriptions:
                subscriber.subscriptions.remove(topic)
        else:
            _log.warning("Received message with unexpected first byte: %r", kind)

    def _drop(self, subscriber: _Subscriber) -> None:
        reader = subscriber.reader
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
        _close_soon(subscriber.framed)

    def _peer_disconnected(self, peer_id: PeerIdentity) -> None:
        _log.info("Client disconnected %r", peer_id)
        subscriber = self._subscribers.pop(peer_id, None)
        if subscriber is not None:
            self._drop(subscriber)
        super()._peer_disconnected(peer_id)

    async def send(self, message: MessageLike) -> None:
        """Send ``message`` to every subscriber whose filter prefixes its first frame."""
        frames = _as_frames(message)
        topic = frames[0]
        dead: list[PeerIdentity] = []
        for peer_id, subscriber in list(self._subscribers.items()):
            if self._subscribers.get(peer_id) is not subscriber:
                continue
            if not any(topic.startswith(prefix) for prefix in subscriber.subscriptions):
                continue
            try:
                await subscriber.framed.send(frames)
            except ConnectionError:
                dead.append(peer_id)
            except OSError as exc:
                _log.error("Error sending message: %s", exc)
        for peer_id in dead:
            self._peer_disconnected(peer_id)

    async def close(self) -> None:
        await super().close()
        subscribers = list(self._subscribers.values())
        self._subscribers.clear()
        readers = [s.reader for s in subscribers if s.reader is not None]
        for reader in readers:
            reader.cancel()
        await asyncio.gather(*readers, return_exceptions=True)
        for subscriber in subscribers:
            await subscriber.framed.close()


class SubSocket(_FairQueueSocket):
    """Receives the messages published on topics it subscribed to."""

    socket_type = SocketType.SUB

    def __init__(self, peer_id=None) -> None:
        super().__init__(peer_id)
        self._subs: set[bytes] = set()

    async def _peer_connected(self, peer_id: PeerIdentity, framed: FramedIo) -> None:
        for topic in list(self._subs):
            await framed.send(create_subs_message(topic, SubMessageType.SUBSCRIBE))
        await super()._peer_connected(peer_id, framed)

    async def subscribe(self, subscription: str | bytes) -> None:
        """Start receiving messages whose first frame begins with ``subscription``."""
        topic = _topic_bytes(subscription)
        self._subs.add(topic)
        await self._process_subs(topic, SubMessageType.SUBSCRIBE)

    async def unsubscribe(self, subscription: str | bytes) -> None:
        """Stop receiving messages for ``subscription``."""
        topic = _topic_bytes(subscription)
        self._subs.discard(topic)
        await self._process_subs(topic, SubMessageType.UNSUBSCRIBE)

    async def _process_subs(self, topic: bytes, msg_type: SubMessageType) -> None:
        message = create_subs_message(topic, msg_type)
        for framed in list(self._peers.values()):
            await framed.send(message)

    async def recv(self) -> list[bytes]:
        """Return the next published message as a list of frames."""
        return await self._next_message()