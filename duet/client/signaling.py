"""
WebSocket signaling channel used by the client.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

LOG = logging.getLogger(__name__)


class SignalingClient:
    """Thin JSON framing over a ``websockets`` client connection."""

    def __init__(self, url: str, *, open_timeout: float = 10.0) -> None:
        self.url = url
        self.open_timeout = open_timeout
        self._ws: Optional[Any] = None

    async def connect(self) -> "SignalingClient":
        self._ws = await websockets.connect(self.url, open_timeout=self.open_timeout)
        LOG.info("Connected to signaling server %s", self.url)
        return self

    async def send(self, payload: Dict[str, Any]) -> None:
        if self._ws is None:
            raise ConnectionError("signaling channel is not open")
        await self._ws.send(json.dumps(payload))

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield decoded frames until the server closes the channel."""

        if self._ws is None:
            raise ConnectionError("signaling channel is not open")
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    LOG.warning("Dropping non-JSON signaling frame")
                    continue
                if not isinstance(message, dict):
                    LOG.warning("Dropping signaling frame that is not an object")
                    continue
                yield message
        except ConnectionClosed as exc:
            LOG.info("Signaling channel closed (%s)", exc)

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    async def __aenter__(self) -> "SignalingClient":
        return await self.connect()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
