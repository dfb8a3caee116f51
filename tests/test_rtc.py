"""Tests covering the aiortc conversion helpers and media provider."""

import asyncio
import time

import pytest

from duet.client.negotiation import MediaAcquisitionError
from duet.client.rtc import (
    CapturedMedia,
    MediaPlayerProvider,
    candidate_from_dict,
    candidate_to_dict,
    description_from_dict,
    to_rtc_ice_servers,
)
from duet.schemas import IceServerModel

HOST_CANDIDATE = "candidate:1 1 udp 2122260223 192.168.1.2 54321 typ host"


def test_candidate_from_browser_json() -> None:
    candidate = candidate_from_dict({"candidate": HOST_CANDIDATE, "sdpMid": "0", "sdpMLineIndex": 0})

    assert candidate.ip == "192.168.1.2"
    assert candidate.port == 54321
    assert candidate.type == "host"
    assert candidate.sdpMid == "0"
    assert candidate.sdpMLineIndex == 0
    assert candidate_to_dict(candidate)["candidate"] == HOST_CANDIDATE


def test_malformed_payloads_raise_value_error() -> None:
    with pytest.raises(ValueError):
        candidate_from_dict({"sdpMid": "0"})
    with pytest.raises(ValueError):
        description_from_dict({"type": "offer"})

    description = description_from_dict({"type": "answer", "sdp": "v=0\r\n"})
    assert description.type == "answer"


def test_ice_servers_are_converted() -> None:
    servers = to_rtc_ice_servers(
        [
            IceServerModel(urls="stun:stun.example.com"),
            IceServerModel(urls=["turn:turn.example.com"], username="u", credential="p"),
        ]
    )

    assert servers[0].urls == ["stun:stun.example.com"]
    assert servers[1].username == "u"
    assert servers[1].credential == "p"


def test_synthetic_media_without_devices() -> None:
    media = asyncio.run(MediaPlayerProvider().acquire())

    assert sorted(track.kind for track in media.tracks) == ["audio", "video"]
    media.stop()
    assert media.tracks == []


def test_missing_device_is_reported_as_acquisition_failure(tmp_path) -> None:
    provider = MediaPlayerProvider(video=str(tmp_path / "no-such-camera.mp4"))

    with pytest.raises(MediaAcquisitionError):
        asyncio.run(provider.acquire())


class FakeTrack:
    kind = "video"

    def __init__(self) -> None:
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


def test_cancelled_acquire_releases_late_media(monkeypatch) -> None:
    track = FakeTrack()
    provider = MediaPlayerProvider()

    def slow_open() -> CapturedMedia:
        time.sleep(0.2)
        return CapturedMedia(tracks=[track])

    monkeypatch.setattr(provider, "_open", slow_open)

    async def scenario() -> None:
        task = asyncio.create_task(provider.acquire())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert track.stopped is False
        await asyncio.sleep(0.4)

    asyncio.run(scenario())
    assert track.stopped is True
