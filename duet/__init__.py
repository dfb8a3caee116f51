"""
Duet pairing service package.

Duet matches anonymous clients into 1:1 video calls.  The coordinator side
(:mod:`duet.coordinator`) keeps the waiting slot, the partner table and relays
negotiation messages; the client side (:mod:`duet.client`) runs the
negotiation state machine that drives each pair to a direct media link.
"""

from __future__ import annotations

__all__ = [
    "CoordinatorConfig",
    "DuetError",
]


class DuetError(RuntimeError):
    """Base class for Duet errors."""


class CoordinatorConfig:
    """Top level coordinator configuration resolved from a YAML profile."""

    def __init__(
        self,
        profile: str = "default",
        *,
        pairing_policy: str = "single-slot",
        queue_size: int = 256,
        ping_interval: float = 30.0,
        pong_timeout: float = 60.0,
        ice_servers: list | None = None,
    ) -> None:
        self.profile = profile
        self.pairing_policy = pairing_policy
        self.queue_size = queue_size
        self.ping_interval = ping_interval
        self.pong_timeout = pong_timeout
        self.ice_servers = list(ice_servers or [])

    @classmethod
    def from_profile(cls, profile: str = "default") -> "CoordinatorConfig":
        from .utils.profiles import resolve_profile

        settings = resolve_profile(profile)
        return cls(
            profile=profile,
            pairing_policy=str(settings.get("pairing_policy") or "single-slot"),
            queue_size=int(settings.get("queue_size", 256)),
            ping_interval=float(settings.get("ping_interval", 30.0)),
            pong_timeout=float(settings.get("pong_timeout", 60.0)),
            ice_servers=settings.get("ice_servers"),
        )
