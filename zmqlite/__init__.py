"""Asyncio ZeroMQ-style PUSH/PULL, PUB/SUB, REQ/REP and ROUTER sockets over TCP and IPC."""

__version__ = "0.1.0"