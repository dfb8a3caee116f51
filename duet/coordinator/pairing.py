"""
Pairing queue policies.

The default policy keeps a single waiting slot: a new requester either matches
the waiting peer or replaces it.  The FIFO policy keeps every waiter in arrival
order instead.
"""

from __future__ import annotations

from collections import deque
from typing import Deque, List, Optional

from .. import DuetError

SINGLE_SLOT = "single-slot"
FIFO = "fifo"


class UnknownPairingPolicy(DuetError):
    """Raised when a profile names a policy that does not exist."""


class PairingQueue:
    """Single-slot matcher."""

    policy = SINGLE_SLOT

    def __init__(self) -> None:
        self._waiting: Optional[str] = None

    def match(self, peer_id: str) -> Optional[str]:
        """
        Return the partner for ``peer_id`` or park ``peer_id`` and return None.

        A waiting identifier equal to ``peer_id`` is never a match.
        """

        waiting = self._waiting
        if waiting is not None and waiting != peer_id:
            self._waiting = None
            return waiting
        # Displaces any earlier waiter.
        self._waiting = peer_id
        return None

    def discard(self, peer_id: str) -> bool:
        if self._waiting == peer_id:
            self._waiting = None
            return True
        return False

    def waiting(self) -> List[str]:
        return [self._waiting] if self._waiting is not None else []

    def __contains__(self, peer_id: object) -> bool:
        return peer_id is not None and peer_id == self._waiting

    def __len__(self) -> int:
        return 0 if self._waiting is None else 1


class FifoPairingQueue(PairingQueue):
    """Matches the longest waiting peer first; nobody is displaced."""

    policy = FIFO

    def __init__(self) -> None:
        super().__init__()
        self._queue: Deque[str] = deque()

    def match(self, peer_id: str) -> Optional[str]:
        for candidate in list(self._queue):
            if candidate != peer_id:
                self._queue.remove(candidate)
                self.discard(peer_id)
                return candidate
        if peer_id not in self._queue:
            self._queue.append(peer_id)
        return None

    def discard(self, peer_id: str) -> bool:
        try:
            self._queue.remove(peer_id)
        except ValueError:
            return False
        return True

    def waiting(self) -> List[str]:
        return list(self._queue)

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._queue

    def __len__(self) -> int:
        return len(self._queue)


def create_pairing_queue(policy: str = SINGLE_SLOT) -> PairingQueue:
    key = str(policy or SINGLE_SLOT).strip().lower().replace("_", "-")
    if key in {SINGLE_SLOT, "single", "slot"}:
        return PairingQueue()
    if key == FIFO:
        return FifoPairingQueue()
    raise UnknownPairingPolicy(f"Unsupported pairing policy '{policy}'")
