import time

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from duet import CoordinatorConfig
from duet.coordinator.server import create_app


def make_client(**overrides) -> TestClient:
    overrides.setdefault("ping_interval", 0)
    config = CoordinatorConfig(**overrides)
    return TestClient(create_app(config=config))


def sync(ws) -> None:
    """Wait until every frame sent so far on ``ws`` has been processed."""

    ws.send_json({"type": "ping"})
    while ws.receive_json()["type"] != "pong":
        pass


def test_pair_relay_and_disconnect_over_websocket() -> None:
    with make_client() as client:
        with client.websocket_connect("/ws") as alice:
            alice.send_json({"type": "find-partner", "userId": "alice"})
            sync(alice)

            with client.websocket_connect("/ws") as bob:
                bob.send_json({"type": "find-partner", "userId": "bob"})
                assert bob.receive_json() == {"type": "partner-found", "partnerId": "alice", "initiator": True}
                assert alice.receive_json() == {"type": "partner-found", "partnerId": "bob", "initiator": False}

                offer = {"type": "offer", "offer": {"type": "offer", "sdp": "v=0\r\n"}}
                bob.send_json(offer)
                assert alice.receive_json() == offer

                answer = {"type": "answer", "answer": {"type": "answer", "sdp": "v=0\r\n"}}
                alice.send_json(answer)
                assert bob.receive_json() == answer

                candidate = {"type": "ice-candidate", "candidate": {"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host"}}
                bob.send_json(candidate)
                assert alice.receive_json() == candidate

                stats = client.get("/stats").json()
                assert stats["connected"] == 2
                assert stats["paired"] == 1
                assert stats["waiting"] == 0

            assert alice.receive_json() == {"type": "partner-disconnected"}


def test_logical_message_names_are_accepted() -> None:
    with make_client() as client:
        with client.websocket_connect("/ws") as alice:
            alice.send_json({"type": "pairing-request", "userId": "alice"})
            sync(alice)
            with client.websocket_connect("/ws") as bob:
                bob.send_json({"type": "pairing-request", "userId": "bob"})
                assert bob.receive_json()["partnerId"] == "alice"
                assert alice.receive_json()["partnerId"] == "bob"

                message = {"type": "session-offer", "offer": {"sdp": "x", "type": "offer"}}
                bob.send_json(message)
                assert alice.receive_json() == message


def test_pairing_request_without_id_uses_session_id() -> None:
    with make_client() as client:
        with client.websocket_connect("/ws") as alice:
            alice.send_json({"type": "find-partner"})
            sync(alice)
            with client.websocket_connect("/ws") as bob:
                bob.send_json({"type": "find-partner"})
                result = bob.receive_json()
                assert result["type"] == "partner-found"
                assert result["initiator"] is True
                assert len(result["partnerId"]) == 32


def test_malformed_frames_are_dropped() -> None:
    with make_client() as client:
        with client.websocket_connect("/ws") as alice:
            alice.send_text("not json")
            alice.send_json(["a", "list"])
            alice.send_json({"type": "bogus"})
            alice.send_json({"type": "offer", "offer": {}})
            sync(alice)

            alice.send_json({"type": "find-partner", "userId": "alice"})
            sync(alice)
            assert client.get("/stats").json()["waiting"] == 1


def test_ping_from_client_gets_pong() -> None:
    with make_client() as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "ping", "ts": 1})
            reply = ws.receive_json()
            assert reply["type"] == "pong"
            assert "ts" in reply


def test_healthz_reports_profile() -> None:
    with make_client() as client:
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "profile": "default"}


def test_stats_starts_empty() -> None:
    with make_client(pairing_policy="fifo") as client:
        assert client.get("/stats").json() == {
            "connected": 0,
            "waiting": 0,
            "paired": 0,
            "policy": "fifo",
        }


def test_ice_servers_from_profile() -> None:
    servers = [
        {"urls": "stun:stun.example.com:3478"},
        {"urls": ["turn:turn.example.com:3478"], "username": "u", "credential": "p"},
    ]
    with make_client(ice_servers=servers) as client:
        assert client.get("/ice-servers").json() == servers


def test_ice_servers_fall_back_when_profile_is_empty() -> None:
    with make_client() as client:
        servers = client.get("/ice-servers").json()
        assert servers
        assert all(server["urls"].startswith("stun:") for server in servers)


def wait_for_stats(client: TestClient, **expected) -> None:
    deadline = time.monotonic() + 2.0
    while time.monotonic() < deadline:
        stats = client.get("/stats").json()
        if all(stats[key] == value for key, value in expected.items()):
            return
        time.sleep(0.01)
    raise AssertionError(f"stats never reached {expected}: {stats}")


def test_silent_paired_clients_stay_connected() -> None:
    with make_client(ping_interval=0.1, pong_timeout=0.2) as client:
        with client.websocket_connect("/ws") as alice:
            alice.send_json({"type": "find-partner", "userId": "alice"})
            wait_for_stats(client, waiting=1)
            with client.websocket_connect("/ws") as bob:
                bob.send_json({"type": "find-partner", "userId": "bob"})
                assert bob.receive_json()["type"] == "partner-found"
                assert alice.receive_json()["type"] == "partner-found"

                # Several keepalive periods without a single frame from either side.
                time.sleep(0.6)

                offer = {"type": "offer", "offer": {"type": "offer", "sdp": "v=0\r\n"}}
                bob.send_json(offer)
                assert alice.receive_json() == offer
                assert client.get("/stats").json()["paired"] == 1


def test_client_answering_pings_stays_connected() -> None:
    with make_client(ping_interval=0.1, pong_timeout=0.2) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

            for _ in range(5):
                message = ws.receive_json()
                assert message["type"] == "ping"
                ws.send_json({"type": "pong", "ts": message["ts"]})

            sync(ws)


def test_client_that_stops_answering_pings_is_closed() -> None:
    with make_client(ping_interval=0.1, pong_timeout=0.2) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "pong"})

            with pytest.raises(WebSocketDisconnect) as excinfo:
                for _ in range(50):
                    assert ws.receive_json()["type"] == "ping"
            assert excinfo.value.code == 1011
