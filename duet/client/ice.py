"""
Relay-credential provider: fetch STUN/TURN descriptors over HTTP.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import httpx

from ..protocol import ProtocolError
from ..schemas import IceServerModel, parse_ice_servers
from ..utils.profiles import fallback_ice_servers

LOG = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


def default_ice_servers() -> List[IceServerModel]:
    return parse_ice_servers(fallback_ice_servers())


async def fetch_ice_servers(
    url: Optional[str],
    *,
    timeout: float = DEFAULT_TIMEOUT,
    fallback: Optional[Sequence[IceServerModel]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[IceServerModel]:
    """
    Return the descriptors served at ``url``.

    Any failure (network, HTTP status, malformed body, empty list) yields the
    fallback list instead; the caller never sees an exception.
    """

    fallback_servers = list(fallback) if fallback is not None else default_ice_servers()
    if not url:
        return fallback_servers

    headers = {"User-Agent": "DuetClient/1.0", "Accept": "application/json"}
    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport) as client:
            response = await client.get(url, headers=headers)
            response.raise_for_status()
            servers = parse_ice_servers(response.json())
    except (httpx.HTTPError, ValueError, ProtocolError) as exc:
        LOG.warning("Relay credential fetch from %s failed (%s); using fallback servers", url, exc)
        return fallback_servers

    if not servers:
        LOG.warning("Relay credential endpoint %s returned no servers; using fallback", url)
        return fallback_servers
    LOG.info("Loaded %d relay servers from %s", len(servers), url)
    return servers
