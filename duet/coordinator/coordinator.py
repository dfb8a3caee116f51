"""
Pairing coordinator: the single mutual-exclusion domain that owns the
connection registry, the pairing queue and the session table.

Every mutation happens under one :class:`asyncio.Lock`.  Outbound messages are
collected while the lock is held and delivered after it is released, so a slow
channel never stalls pairing or relay for other peers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .. import protocol
from ..protocol import RELAYED_TYPES, MessageType
from .pairing import SINGLE_SLOT, PairingQueue, create_pairing_queue
from .registry import ConnectionRegistry, SignalingChannel
from .sessions import SessionTable

LOG = logging.getLogger(__name__)


@dataclass
class Delivery:
    peer_id: str
    channel: SignalingChannel
    payload: Dict[str, Any]


class Coordinator:
    """Match peers, relay their negotiation messages and handle teardown."""

    def __init__(
        self,
        *,
        policy: str = SINGLE_SLOT,
        registry: Optional[ConnectionRegistry] = None,
        queue: Optional[PairingQueue] = None,
        sessions: Optional[SessionTable] = None,
    ) -> None:
        self.registry = registry or ConnectionRegistry()
        self.queue = queue or create_pairing_queue(policy)
        self.sessions = sessions or SessionTable()
        self._lock = asyncio.Lock()

    @property
    def policy(self) -> str:
        return self.queue.policy

    # ------------------------------------------------------------------ helpers

    def _notify_partner_lost_locked(self, peer_id: str, deliveries: List[Delivery]) -> None:
        partner = self.sessions.dissolve(peer_id)
        if partner is None:
            return
        channel = self.registry.lookup(partner)
        if channel is None:
            return
        deliveries.append(Delivery(partner, channel, protocol.partner_lost()))

    async def _deliver(self, deliveries: List[Delivery]) -> None:
        for delivery in deliveries:
            try:
                await delivery.channel.send(delivery.payload)
            except asyncio.CancelledError:
                raise
            except Exception:
                # A closing channel is handled by its own disconnect path.
                LOG.warning(
                    "Failed to deliver %s to peer=%s",
                    delivery.payload.get("type"),
                    delivery.peer_id,
                    exc_info=True,
                )

    # ------------------------------------------------------------------ public API

    async def request_pairing(self, peer_id: str, channel: SignalingChannel) -> Optional[str]:
        """
        Register ``peer_id`` and match it with a waiting peer or park it.

        The newly arrived requester becomes the initiator.  Returns the partner
        identifier when a match was made.
        """

        deliveries: List[Delivery] = []
        async with self._lock:
            replaced = self.registry.register(peer_id, channel)
            if replaced is not None:
                LOG.info("Peer %s re-registered; replacing stale channel", peer_id)

            # Re-requesting while paired dissolves the old session first.
            self._notify_partner_lost_locked(peer_id, deliveries)

            partner: Optional[str] = None
            while True:
                candidate = self.queue.match(peer_id)
                if candidate is None:
                    break
                candidate_channel = self.registry.lookup(candidate)
                if candidate_channel is None:
                    LOG.debug("Skipping unreachable waiting peer %s", candidate)
                    continue
                partner = candidate
                self.sessions.pair(peer_id, partner)
                deliveries.append(
                    Delivery(partner, candidate_channel, protocol.pairing_result(peer_id, initiator=False))
                )
                deliveries.append(
                    Delivery(peer_id, channel, protocol.pairing_result(partner, initiator=True))
                )
                break

        if partner is None:
            LOG.info("Peer %s waiting for a partner (policy=%s)", peer_id, self.policy)
        else:
            LOG.info("Paired %s (responder) with %s (initiator)", partner, peer_id)
        await self._deliver(deliveries)
        return partner

    async def relay(self, from_id: Optional[str], message: Dict[str, Any]) -> bool:
        """
        Forward an offer, answer or candidate to ``from_id``'s partner verbatim.

        Returns False when the message was discarded because no partner is
        recorded or the partner is no longer reachable.
        """

        kind = protocol.message_type(message)
        if kind not in RELAYED_TYPES:
            LOG.debug("Refusing to relay %r from peer=%s", message.get("type"), from_id)
            return False

        async with self._lock:
            partner = self.sessions.partner_of(from_id)
            channel = self.registry.lookup(partner)

        if partner is None or channel is None:
            LOG.debug("Dropping %s from peer=%s: no partner", kind.value, from_id)
            return False

        await self._deliver([Delivery(partner, channel, message)])
        return True

    async def disconnect(self, peer_id: Optional[str], channel: Optional[SignalingChannel] = None) -> None:
        """
        Tear down ``peer_id`` after its channel closed.

        With ``channel`` given, a close of a channel that was already replaced by
        a reconnect is ignored.
        """

        if peer_id is None:
            return
        deliveries: List[Delivery] = []
        async with self._lock:
            removed = self.registry.remove(peer_id, channel)
            if not removed and channel is not None:
                return
            self.queue.discard(peer_id)
            self._notify_partner_lost_locked(peer_id, deliveries)

        for delivery in deliveries:
            LOG.info("Peer %s lost partner %s", delivery.peer_id, peer_id)
        await self._deliver(deliveries)

    async def handle_message(
        self,
        peer_id: Optional[str],
        channel: SignalingChannel,
        message: Dict[str, Any],
    ) -> None:
        """Dispatch a relayed message; pairing requests go through :meth:`request_pairing`."""

        kind = protocol.message_type(message)
        if kind is None:
            LOG.warning("Dropping message with unknown type %r from peer=%s", message.get("type"), peer_id)
            return
        if kind in RELAYED_TYPES:
            await self.relay(peer_id, message)
            return
        if kind is MessageType.PAIRING_REQUEST and peer_id is not None:
            await self.request_pairing(peer_id, channel)
            return
        LOG.debug("Ignoring %s from peer=%s", kind.value, peer_id)

    async def stats(self) -> Dict[str, Any]:
        async with self._lock:
            return {
                "connected": len(self.registry),
                "waiting": len(self.queue),
                "paired": len(self.sessions) // 2,
                "policy": self.policy,
            }

    async def describe(self) -> Dict[str, Any]:
        async with self._lock:
            return {
                "peers": sorted(self.registry),
                "waiting": self.queue.waiting(),
                "partners": {
                    peer_id: self.sessions.partner_of(peer_id) for peer_id in sorted(self.registry)
                },
            }
