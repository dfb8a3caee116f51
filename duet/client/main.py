"""
Client entrypoint: join the pairing queue and keep negotiating until Ctrl+C.

Examples
--------
Use a synthetic test pattern against a local coordinator::

    duet-client --url ws://127.0.0.1:8080/ws

Capture from a V4L2 camera and a PulseAudio microphone::

    duet-client --video /dev/video0 --video-format v4l2 \
        --audio default --audio-format pulse
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from ..utils.logging import configure_logging
from .call import Call
from .negotiation import DEFAULT_NEGOTIATION_TIMEOUT, DEFAULT_REQUEUE_DELAY, NegotiationSnapshot
from .signaling import SignalingClient

LOG = logging.getLogger(__name__)


def derive_ice_url(signaling_url: str) -> str:
    """Map ``ws://host/ws`` to the coordinator's ``http://host/ice-servers``."""

    parts = urlsplit(signaling_url)
    scheme = {"ws": "http", "wss": "https"}.get(parts.scheme, parts.scheme)
    return urlunsplit((scheme, parts.netloc, "/ice-servers", "", ""))


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Duet video call client")
    parser.add_argument("--url", default="ws://127.0.0.1:8080/ws", help="coordinator WebSocket URL")
    parser.add_argument(
        "--ice-url",
        default=None,
        help="relay credential endpoint (defaults to the coordinator's /ice-servers)",
    )
    parser.add_argument("--peer-id", default=None, help="identifier to announce (random by default)")
    parser.add_argument("--video", default=None, help="video capture device or file")
    parser.add_argument("--video-format", default=None, help="ffmpeg input format for --video")
    parser.add_argument("--audio", default=None, help="audio capture device or file")
    parser.add_argument("--audio-format", default=None, help="ffmpeg input format for --audio")
    parser.add_argument(
        "--requeue-delay",
        type=float,
        default=DEFAULT_REQUEUE_DELAY,
        help="seconds to wait before re-joining the queue after losing a partner",
    )
    parser.add_argument(
        "--negotiation-timeout",
        type=float,
        default=DEFAULT_NEGOTIATION_TIMEOUT,
        help="seconds before an unfinished negotiation is abandoned (0 disables)",
    )
    parser.add_argument("--log-level", default="INFO", help="root log level")
    return parser.parse_args(argv)


def _report(snapshot: NegotiationSnapshot) -> None:
    if snapshot.error:
        LOG.error("Status: %s (%s)", snapshot.state.value, snapshot.error)
    else:
        LOG.info("Status: %s partner=%s", snapshot.state.value, snapshot.partner_id or "-")


async def main(args: argparse.Namespace) -> None:
    from .rtc import MediaPlayerProvider

    media = MediaPlayerProvider(
        video=args.video,
        video_format=args.video_format,
        audio=args.audio,
        audio_format=args.audio_format,
    )
    channel = await SignalingClient(args.url).connect()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signame in ("SIGINT", "SIGTERM"):
        try:
            loop.add_signal_handler(getattr(signal, signame), stop_event.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - windows
            pass

    async with Call(
        channel,
        media,
        ice_url=args.ice_url or derive_ice_url(args.url),
        peer_id=args.peer_id,
        requeue_delay=args.requeue_delay,
        negotiation_timeout=args.negotiation_timeout,
    ) as call:
        assert call.machine is not None
        call.machine.subscribe(_report)
        closed = asyncio.create_task(call.wait_closed())
        stopped = asyncio.create_task(stop_event.wait())
        done, pending = await asyncio.wait({closed, stopped}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        if closed in done:
            LOG.warning("Coordinator closed the signaling channel")


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)
    try:
        asyncio.run(main(args))
    except KeyboardInterrupt:
        LOG.info("Client interrupted by user.")
    except OSError as exc:
        LOG.error("Could not reach coordinator at %s: %s", args.url, exc)


if __name__ == "__main__":
    run()
