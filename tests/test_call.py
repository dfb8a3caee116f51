import asyncio

import pytest

from duet.client.call import Call
from duet.client.negotiation import NegotiationState

from test_negotiation import FakeConnectivityFactory, FakeMediaProvider

_END = object()


class FakeSignalingChannel:
    def __init__(self) -> None:
        self.sent = []
        self.closed = False
        self.inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, payload) -> None:
        self.sent.append(payload)

    async def messages(self):
        while True:
            message = await self.inbox.get()
            if message is _END:
                return
            yield message

    async def close(self) -> None:
        self.closed = True

    def push(self, message) -> None:
        self.inbox.put_nowait(message)


def make_call(channel: FakeSignalingChannel):
    provider = FakeMediaProvider()
    factory = FakeConnectivityFactory()
    call = Call(channel, provider, connectivity_factory=factory, peer_id="alice", negotiation_timeout=0)
    return call, provider, factory


async def negotiate(call: Call, channel: FakeSignalingChannel) -> None:
    await call.machine.wait_for(NegotiationState.AWAITING_PARTNER, timeout=2.0)
    channel.push({"type": "partner-found", "partnerId": "bob", "initiator": False})
    channel.push({"type": "offer", "offer": {"type": "offer", "sdp": "remote-offer"}})
    await call.machine.wait_for(NegotiationState.EXCHANGING_CANDIDATES, timeout=2.0)


def test_call_releases_everything_on_exit() -> None:
    async def scenario() -> None:
        channel = FakeSignalingChannel()
        call, provider, factory = make_call(channel)

        async with call:
            await negotiate(call, channel)
            assert channel.sent[0] == {"type": "find-partner", "userId": "alice"}
            assert call.snapshot().partner_id == "bob"

        assert channel.closed is True
        assert provider.media.stopped is True
        assert factory.last.closed is True
        assert call.snapshot().state is NegotiationState.IDLE

    asyncio.run(scenario())


def test_call_releases_everything_on_error() -> None:
    async def scenario() -> None:
        channel = FakeSignalingChannel()
        call, provider, factory = make_call(channel)

        with pytest.raises(RuntimeError, match="boom"):
            async with call:
                await negotiate(call, channel)
                raise RuntimeError("boom")

        assert channel.closed is True
        assert provider.media.stopped is True
        assert factory.last.closed is True

    asyncio.run(scenario())


def test_call_releases_everything_on_cancellation() -> None:
    async def scenario() -> None:
        channel = FakeSignalingChannel()
        call, provider, factory = make_call(channel)
        ready = asyncio.Event()

        async def body() -> None:
            async with call:
                await negotiate(call, channel)
                ready.set()
                await asyncio.sleep(60)

        task = asyncio.create_task(body())
        await asyncio.wait_for(ready.wait(), timeout=2.0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert channel.closed is True
        assert provider.media.stopped is True
        assert factory.last.closed is True

    asyncio.run(scenario())


def test_wait_closed_returns_when_server_hangs_up() -> None:
    async def scenario() -> None:
        channel = FakeSignalingChannel()
        call, _, _ = make_call(channel)

        async with call:
            channel.push(_END)
            await asyncio.wait_for(call.wait_closed(), timeout=2.0)

        assert channel.closed is True

    asyncio.run(scenario())


def test_close_is_idempotent() -> None:
    async def scenario() -> None:
        channel = FakeSignalingChannel()
        call, _, _ = make_call(channel)
        await call.open()
        await call.close()
        await call.close()

        assert channel.closed is True
        assert call.snapshot().state is NegotiationState.IDLE

    asyncio.run(scenario())
