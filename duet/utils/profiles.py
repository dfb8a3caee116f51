"""
Profile discovery for the coordinator and the relay-server fallback list.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

import yaml

LOG = logging.getLogger(__name__)

ENV_PROFILES_VAR = "DUET_PROFILES"
CONFIG_DIR = Path(__file__).resolve().parent.parent / "configs"
PROFILES_PATH = CONFIG_DIR / "profiles.yaml"

# Used by clients when neither the credential endpoint nor a profile is reachable.
FALLBACK_ICE_SERVERS: List[dict] = [
    {"urls": "stun:stun.relay.metered.ca:80"},
    {"urls": "stun:stun.l.google.com:19302"},
]


def _profiles_path() -> Path:
    override = os.environ.get(ENV_PROFILES_VAR)
    if override:
        return Path(override).expanduser()
    return PROFILES_PATH


@lru_cache(maxsize=4)
def _read_profiles(path: Path) -> Dict[str, dict]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        LOG.warning("Profiles file %s not found; using built-in defaults", path)
        return {}
    if not isinstance(loaded, dict):
        LOG.warning("Profiles file %s is not a mapping; ignoring it", path)
        return {}
    return {str(name): dict(body or {}) for name, body in loaded.items()}


def load_profiles(path: Optional[Path] = None) -> Dict[str, dict]:
    """Return every profile defined in ``path`` (or the configured file)."""

    return dict(_read_profiles(path or _profiles_path()))


def resolve_profile(name: str = "default", path: Optional[Path] = None) -> dict:
    """
    Return the settings of profile ``name``.

    Unknown profiles fall back to ``default``; a missing file yields ``{}`` so
    the caller's own defaults apply.
    """

    profiles = load_profiles(path)
    if name in profiles:
        return dict(profiles[name])
    if name != "default":
        LOG.warning("Unknown profile '%s'; falling back to 'default'", name)
    return dict(profiles.get("default", {}))


def fallback_ice_servers() -> List[dict]:
    return [dict(server) for server in FALLBACK_ICE_SERVERS]
