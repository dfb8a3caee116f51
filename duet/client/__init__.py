"""
Client side of Duet: the negotiation state machine and its collaborators.

:mod:`duet.client.rtc` (aiortc) is imported lazily so the state machine can be
used and tested without media libraries.
"""

from __future__ import annotations

from .call import Call
from .ice import default_ice_servers, fetch_ice_servers
from .negotiation import (
    InvalidTransition,
    MediaAcquisitionError,
    NegotiationError,
    NegotiationMachine,
    NegotiationSnapshot,
    NegotiationState,
)
from .signaling import SignalingClient

__all__ = [
    "Call",
    "InvalidTransition",
    "MediaAcquisitionError",
    "NegotiationError",
    "NegotiationMachine",
    "NegotiationSnapshot",
    "NegotiationState",
    "SignalingClient",
    "default_ice_servers",
    "fetch_ice_servers",
]
