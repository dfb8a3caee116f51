"""
Call orchestration: one signaling channel, one negotiation machine, local media.

:class:`Call` is an async context manager.  Leaving the ``async with`` block,
normally or through an exception or cancellation, stops the machine, closes
the peer connection, releases the captured tracks and closes the signaling
channel.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from ..schemas import IceServerModel
from .ice import fetch_ice_servers
from .negotiation import (
    DEFAULT_NEGOTIATION_TIMEOUT,
    DEFAULT_REQUEUE_DELAY,
    ConnectivityFactory,
    MediaProvider,
    NegotiationMachine,
    NegotiationSnapshot,
)

LOG = logging.getLogger(__name__)


class SignalingChannel(Protocol):
    async def send(self, payload: Dict[str, Any]) -> None: ...

    def messages(self) -> AsyncIterator[Dict[str, Any]]: ...

    async def close(self) -> None: ...


def aiortc_factory(ice_servers: List[IceServerModel]) -> ConnectivityFactory:
    from .rtc import AiortcConnectivity

    return functools.partial(AiortcConnectivity, ice_servers)


class Call:
    def __init__(
        self,
        channel: SignalingChannel,
        media_provider: MediaProvider,
        *,
        ice_url: Optional[str] = None,
        connectivity_factory: Optional[ConnectivityFactory] = None,
        peer_id: Optional[str] = None,
        requeue_delay: float = DEFAULT_REQUEUE_DELAY,
        negotiation_timeout: Optional[float] = DEFAULT_NEGOTIATION_TIMEOUT,
    ) -> None:
        self.channel = channel
        self.media_provider = media_provider
        self.ice_url = ice_url
        self.connectivity_factory = connectivity_factory
        self.peer_id = peer_id
        self.requeue_delay = requeue_delay
        self.negotiation_timeout = negotiation_timeout
        self.machine: Optional[NegotiationMachine] = None
        self._machine_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closed = False

    async def __aenter__(self) -> "Call":
        try:
            await self.open()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def open(self) -> None:
        factory = self.connectivity_factory
        if factory is None:
            ice_servers = await fetch_ice_servers(self.ice_url)
            factory = aiortc_factory(ice_servers)

        self.machine = NegotiationMachine(
            self.channel,
            self.media_provider,
            factory,
            peer_id=self.peer_id,
            requeue_delay=self.requeue_delay,
            negotiation_timeout=self.negotiation_timeout,
        )
        self._machine_task = asyncio.create_task(self.machine.run())
        self._reader_task = asyncio.create_task(self._pump())
        self.machine.start()

    async def _pump(self) -> None:
        assert self.machine is not None
        async for message in self.channel.messages():
            self.machine.deliver(message)
        LOG.info("Signaling channel ended for %s", self.machine.peer_id)

    def snapshot(self) -> Optional[NegotiationSnapshot]:
        return self.machine.snapshot() if self.machine else None

    async def wait_closed(self) -> None:
        """Return once the signaling channel has been closed by the server."""

        if self._reader_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        elif self._reader_task is not None and not self._reader_task.cancelled():
            error = self._reader_task.exception()
            if error is not None:
                LOG.warning("Signaling reader stopped with %r", error)

        try:
            if self.machine is not None:
                await self.machine.close()
            if self._machine_task is not None:
                with contextlib.suppress(asyncio.CancelledError):
                    await self._machine_task
        finally:
            try:
                await self.channel.close()
            except Exception:  # pragma: no cover - defensive
                LOG.warning("Failed to close signaling channel", exc_info=True)
