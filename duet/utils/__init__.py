"""Utility helpers for Duet."""

from .logging import configure_logging
from .profiles import fallback_ice_servers, load_profiles, resolve_profile

__all__ = ["configure_logging", "fallback_ice_servers", "load_profiles", "resolve_profile"]
