# zmqlite

An asyncio library of ZeroMQ-style messaging sockets that speak the ZMTP 3
protocol over TCP and Unix-domain (IPC) transports. It uses only the
standard library.

## Socket types

| Pattern    | Sockets                      | Module              |
|------------|------------------------------|---------------------|
| Pipeline   | `PushSocket`, `PullSocket`   | `zmqlite.pipeline`  |
| Pub/Sub    | `PubSocket`, `SubSocket`     | `zmqlite.pubsub`    |
| Req/Rep    | `ReqSocket`, `RepSocket`     | `zmqlite.reqrep`    |
| Routing    | `RouterSocket`               | `zmqlite.router`    |

All sockets derive from `zmqlite.base.Socket` and share these coroutines:

- `await bind(endpoint)` listens on an endpoint such as `tcp://localhost:0`
  or `ipc://service.sock` and returns the endpoint actually bound (port 0
  picks a free port). Bound endpoints are kept in the `binds` dictionary.
- `await connect(endpoint)` connects and completes the handshake. While the
  connection is refused it keeps retrying, with delays that grow up to a
  few seconds.
- `await unbind(endpoint)` stops listening on a bound endpoint.
- `await close()` stops all listeners and drops all peers. Sockets are also
  async context managers (`async with PullSocket() as pull: ...`).

`monitor()` returns an `asyncio.Queue` that from then on receives
`SocketEvent` values (`kind`, `endpoint`, `peer_id`), where `kind` is an
`EventKind` such as `LISTENING`, `ACCEPTED`, `CONNECTED`, `DISCONNECTED` or
`CLOSED`.

A socket may be given its own identity, `Socket(peer_id=...)`, as a
`PeerIdentity`, `bytes` or `str`; it is announced to peers during the
handshake.

Messages may be passed to `send` as `bytes`, a `str` (sent as UTF-8), or a
list of frames; `recv` always returns a list of `bytes` frames.

## Request / reply

```python
import asyncio
from zmqlite.reqrep import RepSocket, ReqSocket

async def main():
    rep = RepSocket()
    endpoint = await rep.bind("tcp://localhost:0")

    req = ReqSocket()
    await req.connect(endpoint)

    await req.send([b"ping"])
    request = await rep.recv()
    await rep.send([request[0] + b" pong"])
    print(await req.recv())          # [b'ping pong']

    await req.close()
    await rep.close()

asyncio.run(main())
```

A `ReqSocket` must alternate `send` and `recv`: requests go to connected
peers in turn, and a second `send` while a request is outstanding raises
`ReturnToSenderError`, which carries the message back in its `message`
attribute. A `RepSocket` receives requests fairly from all peers and can
only reply after it has received one.

## Publish / subscribe

```python
from zmqlite.pubsub import PubSocket, SubSocket

pub = PubSocket()
endpoint = await pub.bind("tcp://localhost:0")

sub = SubSocket()
await sub.connect(endpoint)
await sub.subscribe("weather.")
await asyncio.sleep(0.1)   # let the publisher see the subscription

await pub.send([b"weather.london rainy"])
print(await sub.recv())
```

A subscriber receives the messages whose first frame starts with one of its
subscriptions; the empty subscription matches everything. Subscriptions are
sent to the publisher as control messages, so they take effect once the
publisher has read them; a subscriber's topics are sent again to every peer
it connects to later. `create_subs_message` builds such a control message.

## Pipeline

`PushSocket.send` delivers each message to one connected peer in
round-robin order and raises `ReturnToSenderError` when no peer is
connected. `PullSocket.recv` receives fairly from all connected peers.

## Routing

A `RouterSocket` puts the sender's identity in front of every message it
receives, and expects the destination identity as the first frame of every
message it sends. Peers whose connection fails are dropped and receiving
continues.

## Lower layers

- `zmqlite.transport`: `parse_endpoint`, the `TcpEndpoint` and `IpcEndpoint`
  types, `FramedIo` (ZMTP greeting, command and message framing), and the
  `connect`, `connect_forever` and `begin_accept` coroutines.
- `zmqlite.base`: `SocketType` with its `compatible` check, and the
  `greet_exchange` and `ready_exchange` handshake steps.
- `zmqlite.util`: `PeerIdentity` (at most 255 bytes; a random UUID when
  none is given) and `negotiate_version`.
- `zmqlite.task_handle`: `TaskHandle`, which stops a background task and
  returns its result.

## Errors

Protocol and socket-state errors raise subclasses of `zmqlite.util.ZmqError`,
among them `PeerIdentityError`, `UnsupportedVersionError`, `NoMessageError`
and `ReturnToSenderError`, and the `TaskError` family of
`zmqlite.task_handle`. Errors from the operating system, such as an address
already in use, come through as `OSError`.

## What it does not do

- Only the TCP and IPC transports exist; there is no encrypted transport.
  IPC needs Unix-domain sockets, and wildcard IPC paths are not supported.
- Only the NULL security mechanism is used; there is no authentication.
- Peers speaking a ZMTP version older than 3.0 are refused rather than
  downgraded to.
- `SocketType` names PAIR, DEALER, XPUB and XSUB for handshake
  compatibility, but there are no socket classes for them.