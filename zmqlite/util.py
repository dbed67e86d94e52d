"""Errors, peer identities and protocol version negotiation."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, ClassVar


class ZmqError(Exception):
    """Base class for every error raised by the package."""


class PeerIdentityError(ZmqError):
    """A peer identity is longer than the protocol allows."""

    def __init__(self, message: str = "Peer identity is too long") -> None:
        super().__init__(message)


class UnsupportedVersionError(ZmqError):
    """The remote peer speaks a protocol version we cannot downgrade to."""

    def __init__(self, version: tuple[int, int]) -> None:
        super().__init__(f"Unsupported ZMTP version: {version[0]}.{version[1]}")
        self.version = version


class NoMessageError(ZmqError):
    """No message is available to receive."""

    def __init__(self, message: str = "No message received") -> None:
        super().__init__(message)


class ReturnToSenderError(ZmqError):
    """A message could not be sent and is handed back to the caller."""

    def __init__(self, reason: str, message: Any) -> None:
        super().__init__(reason)
        self.reason = reason
        self.message = message


@dataclass(frozen=True)
class Greeting:
    """The greeting exchanged at the start of a ZMTP connection."""

    version: tuple[int, int] = (3, 0)
    mechanism: str = "NULL"
    as_server: bool = False


@dataclass(frozen=True, order=True)
class PeerIdentity:
    """Identity of a connected peer: at most 255 bytes."""

    MAX_LENGTH: ClassVar[int] = 255

    value: bytes = field(default_factory=lambda: uuid.uuid4().bytes)

    def __post_init__(self) -> None:
        data = bytes(self.value)
        if len(data) > self.MAX_LENGTH:
            raise PeerIdentityError()
        object.__setattr__(self, "value", data)

    @classmethod
    def new(cls) -> PeerIdentity:
        """Return a fresh random identity made from a UUID4."""
        return cls(uuid.uuid4().bytes)

    @classmethod
    def from_bytes(cls, data: bytes | bytearray | memoryview) -> PeerIdentity:
        """Build an identity from raw bytes; empty input yields a random one."""
        data = bytes(data)
        if not data:
            return cls.new()
        if len(data) > cls.MAX_LENGTH:
            raise PeerIdentityError()
        return cls(data)

    @classmethod
    def from_str(cls, text: str) -> PeerIdentity:
        """Build an identity from the UTF-8 encoding of ``text``."""
        return cls.from_bytes(text.encode("utf-8"))

    def __bytes__(self) -> bytes:
        return self.value

    def __len__(self) -> int:
        return len(self.value)


def negotiate_version(greeting: Any) -> tuple[int, int]:
    """Pick the protocol version to use after the greeting exchange.

    A peer at our version or newer is answered with our own version; an
    older peer is refused, since downgrading is not supported.
    """
    if not isinstance(greeting, Greeting):
        raise ZmqError("Failed Greeting exchange")
    my_version = Greeting().version
    if tuple(greeting.version) >= my_version:
        return my_version
    raise UnsupportedVersionError(tuple(greeting.version))