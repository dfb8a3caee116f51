"""
Connection registry: peer identifier to live signaling channel.
"""

from __future__ import annotations

from typing import Any, Dict, Iterator, Optional, Protocol


class SignalingChannel(Protocol):
    """Anything the coordinator can push a JSON-shaped message into."""

    async def send(self, payload: Dict[str, Any]) -> None: ...


class ConnectionRegistry:
    """
    Authoritative answer to "is this peer currently reachable".

    Every operation is idempotent and never raises.  The registry does not
    notify the pairing queue or session table; the coordinator does that.
    """

    def __init__(self) -> None:
        self._channels: Dict[str, SignalingChannel] = {}

    def register(self, peer_id: str, channel: SignalingChannel) -> Optional[SignalingChannel]:
        """Store ``channel`` for ``peer_id`` and return the entry it replaced."""

        previous = self._channels.get(peer_id)
        self._channels[peer_id] = channel
        return previous if previous is not channel else None

    def lookup(self, peer_id: Optional[str]) -> Optional[SignalingChannel]:
        if peer_id is None:
            return None
        return self._channels.get(peer_id)

    def remove(self, peer_id: Optional[str], channel: Optional[SignalingChannel] = None) -> bool:
        """
        Drop ``peer_id``.  With ``channel`` given, only drop it when it is
        still the registered channel (a reconnect may have replaced it).
        """

        if peer_id is None or peer_id not in self._channels:
            return False
        if channel is not None and self._channels[peer_id] is not channel:
            return False
        del self._channels[peer_id]
        return True

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._channels

    def __len__(self) -> int:
        return len(self._channels)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._channels))
