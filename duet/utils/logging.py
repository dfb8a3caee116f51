"""
Logging helpers shared by the coordinator and client entrypoints.
"""

from __future__ import annotations

import logging
import sys
from typing import Iterable, Optional, Union

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"

# aioice/aiortc log every STUN transaction at INFO.
NOISY_LOGGERS = ("aioice", "aiortc", "websockets.client", "httpx")


def _coerce_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    level: Union[int, str] = logging.INFO,
    format: Optional[str] = None,
    *,
    quiet: Iterable[str] = NOISY_LOGGERS,
) -> None:
    """
    Ensure the root logger is configured exactly once.

    Third-party loggers listed in ``quiet`` are raised to WARNING unless the
    requested level is DEBUG.
    """

    numeric_level = _coerce_level(level)
    if numeric_level > logging.DEBUG:
        for name in quiet:
            logging.getLogger(name).setLevel(logging.WARNING)

    if logging.getLogger().handlers:
        # Respect any user provided configuration.
        return

    logging.basicConfig(
        level=numeric_level,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
