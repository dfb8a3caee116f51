"""
Coordinator process entrypoint.

Resolves the YAML profile, initialises logging and serves the signaling API
with uvicorn until SIGINT/SIGTERM.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from . import CoordinatorConfig
from .coordinator.coordinator import Coordinator
from .coordinator.server import create_app
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


async def serve(config: CoordinatorConfig, host: str = "127.0.0.1", port: int = 8080) -> None:
    """
    Run the signaling API inside an asyncio loop.

    Parameters
    ----------
    config:
        Coordinator configuration resolved from a profile.
    host, port:
        Bind address for the FastAPI/uvicorn server.
    """

    import uvicorn

    coordinator = Coordinator(policy=config.pairing_policy)

    @asynccontextmanager
    async def app_lifespan(_app) -> AsyncIterator[None]:
        LOG.info(
            "Coordinator starting profile=%s policy=%s",
            config.profile,
            coordinator.policy,
        )
        try:
            yield
        finally:
            LOG.info("Coordinator shutting down with %s", await coordinator.stats())

    app = create_app(config=config, coordinator=coordinator, lifespan=app_lifespan)
    server_config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_config=None,
        log_level="info",
        reload=False,
        # Protocol-level pings cover clients that never speak ping/pong frames.
        ws_ping_interval=config.ping_interval or None,
        ws_ping_timeout=config.pong_timeout or None,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down server...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Duet pairing coordinator")
    parser.add_argument("--profile", default="default", help="coordinator profile to load")
    parser.add_argument("--host", default="127.0.0.1", help="bind host for the signaling server")
    parser.add_argument("--port", type=int, default=8080, help="bind port for the signaling server")
    parser.add_argument(
        "--policy",
        choices=("single-slot", "fifo"),
        default=None,
        help="override the profile's pairing policy",
    )
    parser.add_argument("--log-level", default="INFO", help="root log level")
    return parser.parse_args(argv)


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)
    config = CoordinatorConfig.from_profile(args.profile)
    if args.policy:
        config.pairing_policy = args.policy

    try:
        asyncio.run(serve(config=config, host=args.host, port=args.port))
    except KeyboardInterrupt:
        LOG.info("Coordinator interrupted by user.")


if __name__ == "__main__":
    run()
