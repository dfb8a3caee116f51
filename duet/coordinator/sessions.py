"""
Session table: each peer's pointer to its current partner.
"""

from __future__ import annotations

from typing import Dict, Iterator, Optional, Tuple


class SessionTable:
    def __init__(self) -> None:
        self._partners: Dict[str, str] = {}

    def pair(self, first: str, second: str) -> None:
        """Point ``first`` and ``second`` at each other."""

        if first == second:
            raise ValueError("a peer cannot be paired with itself")
        self._partners[first] = second
        self._partners[second] = first

    def partner_of(self, peer_id: Optional[str]) -> Optional[str]:
        if peer_id is None:
            return None
        return self._partners.get(peer_id)

    def clear(self, peer_id: str) -> Optional[str]:
        """Remove ``peer_id``'s pointer and return the partner it named."""

        return self._partners.pop(peer_id, None)

    def dissolve(self, peer_id: str) -> Optional[str]:
        """
        Clear ``peer_id``'s pointer and the partner's pointer back to it.

        The partner's pointer is left alone when it already names someone else.
        """

        partner = self._partners.pop(peer_id, None)
        if partner is not None and self._partners.get(partner) == peer_id:
            del self._partners[partner]
        return partner

    def pairs(self) -> Iterator[Tuple[str, str]]:
        seen = set()
        for peer_id, partner in list(self._partners.items()):
            if peer_id in seen:
                continue
            seen.add(peer_id)
            seen.add(partner)
            yield peer_id, partner

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._partners

    def __len__(self) -> int:
        return len(self._partners)
