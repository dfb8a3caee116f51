"""
Server side of Duet: matchmaking, relay and teardown.
"""

from __future__ import annotations

from .coordinator import Coordinator, Delivery
from .pairing import FifoPairingQueue, PairingQueue, UnknownPairingPolicy, create_pairing_queue
from .registry import ConnectionRegistry, SignalingChannel
from .sessions import SessionTable

__all__ = [
    "ConnectionRegistry",
    "Coordinator",
    "Delivery",
    "FifoPairingQueue",
    "PairingQueue",
    "SessionTable",
    "SignalingChannel",
    "UnknownPairingPolicy",
    "create_pairing_queue",
]
