import asyncio

import pytest

from zmqlite.reqrep import RepSocket, ReqSocket
from zmqlite.util import ReturnToSenderError, ZmqError

ENDPOINT = "tcp://127.0.0.1:0"
TIMEOUT = 10


async def _pair():
    rep = RepSocket()
    bound = await rep.bind(ENDPOINT)
    req = ReqSocket()
    await req.connect(bound)
    return req, rep


@pytest.mark.asyncio
async def test_request_reply_loop():
    req, rep = await _pair()
    n_msg = 16

    async def serve():
        for i in range(n_msg):
            frames = await rep.recv()
            mess = frames[0].decode()
            await rep.send(f"{mess} Rep - {i}")

    async with req, rep:
        server = asyncio.ensure_future(serve())
        for i in range(n_msg):
            await req.send(f"Req - {i}")
            reply = await asyncio.wait_for(req.recv(), TIMEOUT)
            assert reply == [f"Req - {i} Rep - {i}".encode()]
        await asyncio.wait_for(server, TIMEOUT)


@pytest.mark.asyncio
async def test_multipart_request_and_reply():
    req, rep = await _pair()
    async with req, rep:
        await req.send([b"a", b"b"])
        request = await asyncio.wait_for(rep.recv(), TIMEOUT)
        assert request == [b"a", b"b"]
        await rep.send([b"c", b"d"])
        reply = await asyncio.wait_for(req.recv(), TIMEOUT)
        assert reply == [b"c", b"d"]


@pytest.mark.asyncio
async def test_second_send_without_recv_is_refused():
    req, rep = await _pair()
    async with req, rep:
        await req.send("first")
        with pytest.raises(ReturnToSenderError) as info:
            await req.send("second")
        assert info.value.reason == "Unable to send message. Request already in progress"
        assert info.value.message == [b"second"]


@pytest.mark.asyncio
async def test_req_send_without_peers():
    async with ReqSocket() as req:
        with pytest.raises(ReturnToSenderError) as info:
            await req.send("lonely")
        assert info.value.reason == "Not connected to peers. Unable to send messages"


@pytest.mark.asyncio
async def test_req_recv_without_request():
    async with ReqSocket() as req:
        with pytest.raises(ZmqError, match="No request in progress"):
            await req.recv()


@pytest.mark.asyncio
async def test_rep_send_without_request():
    async with RepSocket() as rep:
        with pytest.raises(ReturnToSenderError) as info:
            await rep.send("answer")
        assert info.value.reason == "Unable to send reply. No request in progress"
        assert info.value.message == [b"answer"]


@pytest.mark.asyncio
async def test_rep_can_only_reply_once():
    req, rep = await _pair()
    async with req, rep:
        await req.send("ping")
        assert await asyncio.wait_for(rep.recv(), TIMEOUT) == [b"ping"]
        await rep.send("pong")
        with pytest.raises(ReturnToSenderError):
            await rep.send("pong again")
        assert await asyncio.wait_for(req.recv(), TIMEOUT) == [b"pong"]


@pytest.mark.asyncio
async def test_req_round_robin_over_two_servers():
    rep_a = RepSocket()
    rep_b = RepSocket()
    bound_a = await rep_a.bind(ENDPOINT)
    bound_b = await rep_b.bind(ENDPOINT)
    req = ReqSocket()
    await req.connect(bound_a)
    await req.connect(bound_b)

    async def serve(rep, name, count):
        for _ in range(count):
            await rep.recv()
            await rep.send(name)

    async with req, rep_a, rep_b:
        servers = [
            asyncio.ensure_future(serve(rep_a, "a", 2)),
            asyncio.ensure_future(serve(rep_b, "b", 2)),
        ]
        replies = []
        for i in range(4):
            await req.send(str(i))
            replies.append((await asyncio.wait_for(req.recv(), TIMEOUT))[0])
        await asyncio.wait_for(asyncio.gather(*servers), TIMEOUT)
        assert replies == [b"a", b"b", b"a", b"b"]