"""
aiortc implementations of the media-capture provider and the connectivity
primitive used by :class:`duet.client.negotiation.NegotiationMachine`.

Descriptions travel as ``{"type": ..., "sdp": ...}`` and candidates as
``{"candidate": "candidate:...", "sdpMid": ..., "sdpMLineIndex": ...}``, the
same JSON a browser produces, so aiortc and browser clients interoperate.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import AudioStreamTrack, MediaStreamError, VideoStreamTrack
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..schemas import IceServerModel
from .negotiation import MediaAcquisitionError

LOG = logging.getLogger(__name__)


def to_rtc_ice_servers(servers: Sequence[IceServerModel]) -> List[RTCIceServer]:
    return [
        RTCIceServer(urls=server.url_list(), username=server.username, credential=server.credential)
        for server in servers
    ]


def description_to_dict(description: RTCSessionDescription) -> Dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def description_from_dict(payload: Any) -> RTCSessionDescription:
    if not isinstance(payload, dict) or "sdp" not in payload or "type" not in payload:
        raise ValueError("session description must carry 'type' and 'sdp'")
    return RTCSessionDescription(sdp=str(payload["sdp"]), type=str(payload["type"]))


def candidate_to_dict(candidate) -> Dict[str, Any]:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(payload: Any):
    if not isinstance(payload, dict) or not payload.get("candidate"):
        raise ValueError("candidate must carry a 'candidate' line")
    line = str(payload["candidate"])
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


class AiortcConnectivity:
    """RTCPeerConnection wrapper reporting candidates and link state through callbacks."""

    def __init__(
        self,
        ice_servers: Sequence[IceServerModel],
        on_candidate: Callable[[Any], None],
        on_state: Callable[[str], None],
    ) -> None:
        self.pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=to_rtc_ice_servers(ice_servers)))
        self.remote_tracks: List[MediaStreamTrack] = []
        self._drains: List[asyncio.Task] = []

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            LOG.info("Connection state: %s", self.pc.connectionState)
            on_state(self.pc.connectionState)

        @self.pc.on("icecandidate")
        def on_icecandidate(candidate) -> None:
            if candidate is not None:
                on_candidate(candidate_to_dict(candidate))

        @self.pc.on("track")
        def on_track(track: MediaStreamTrack) -> None:
            LOG.info("Remote %s track received", track.kind)
            self.remote_tracks.append(track)
            self._drains.append(asyncio.ensure_future(self._drain(track)))

    @staticmethod
    async def _drain(track: MediaStreamTrack) -> None:
        # Rendering is out of scope; frames must still be pulled for RTCP to flow.
        with contextlib.suppress(MediaStreamError):
            while True:
                await track.recv()

    def add_tracks(self, tracks: Sequence[Any]) -> None:
        for track in tracks:
            self.pc.addTrack(track)

    async def create_offer(self) -> Dict[str, str]:
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        return description_to_dict(self.pc.localDescription)

    async def create_answer(self) -> Dict[str, str]:
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        return description_to_dict(self.pc.localDescription)

    async def set_remote_description(self, description: Any) -> None:
        await self.pc.setRemoteDescription(description_from_dict(description))

    async def add_candidate(self, candidate: Any) -> None:
        await self.pc.addIceCandidate(candidate_from_dict(candidate))

    async def close(self) -> None:
        for task in self._drains:
            task.cancel()
        self._drains.clear()
        await self.pc.close()


@dataclass
class CapturedMedia:
    tracks: List[MediaStreamTrack] = field(default_factory=list)
    players: List[MediaPlayer] = field(default_factory=list)

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()
        self.tracks.clear()
        self.players.clear()


def _release_late_media(future: "asyncio.Future[CapturedMedia]") -> None:
    if future.cancelled() or future.exception() is not None:
        return
    LOG.info("Releasing capture devices opened after the request was cancelled")
    future.result().stop()


class MediaPlayerProvider:
    """
    Open capture devices with :class:`aiortc.contrib.media.MediaPlayer`.

    Without any device configured, a synthetic test pattern and silence are
    produced instead.
    """

    def __init__(
        self,
        *,
        video: Optional[str] = None,
        video_format: Optional[str] = None,
        audio: Optional[str] = None,
        audio_format: Optional[str] = None,
        video_options: Optional[Dict[str, str]] = None,
    ) -> None:
        self.video = video
        self.video_format = video_format
        self.audio = audio
        self.audio_format = audio_format
        self.video_options = dict(video_options or {"video_size": "1280x720"})

    def _open(self) -> CapturedMedia:
        media = CapturedMedia()
        if self.video:
            player = MediaPlayer(self.video, format=self.video_format, options=self.video_options)
            media.players.append(player)
            if player.video is not None:
                media.tracks.append(player.video)
        if self.audio:
            player = MediaPlayer(self.audio, format=self.audio_format)
            media.players.append(player)
            if player.audio is not None:
                media.tracks.append(player.audio)
        if not self.video and not self.audio:
            media.tracks.extend([AudioStreamTrack(), VideoStreamTrack()])
        if not media.tracks:
            raise MediaAcquisitionError("capture devices produced no tracks")
        return media

    async def acquire(self) -> CapturedMedia:
        future = asyncio.ensure_future(asyncio.to_thread(self._open))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            # The capture thread cannot be interrupted; release whatever it opens.
            future.add_done_callback(_release_late_media)
            raise
        except MediaAcquisitionError:
            raise
        except Exception as exc:
            raise MediaAcquisitionError(f"could not open capture devices: {exc}") from exc
