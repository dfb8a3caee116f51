import pytest

from duet import protocol
from duet.protocol import MessageType, ProtocolError, message_type
from duet.schemas import parse_ice_servers, parse_pairing_request, parse_pairing_result


def test_message_type_accepts_wire_and_logical_names() -> None:
    assert message_type({"type": "find-partner"}) is MessageType.PAIRING_REQUEST
    assert message_type({"type": "pairing-request"}) is MessageType.PAIRING_REQUEST
    assert message_type({"type": "Partner-Lost"}) is MessageType.PARTNER_LOST
    assert message_type({"type": "ice-candidate"}) is MessageType.CONNECTIVITY_CANDIDATE


def test_message_type_rejects_garbage() -> None:
    assert message_type({"type": "hello"}) is None
    assert message_type({"type": 3}) is None
    assert message_type({}) is None
    assert message_type(["find-partner"]) is None


def test_builders_use_wire_field_names() -> None:
    assert protocol.pairing_request("alice") == {"type": "find-partner", "userId": "alice"}
    assert protocol.pairing_result("bob", initiator=1) == {
        "type": "partner-found",
        "partnerId": "bob",
        "initiator": True,
    }
    assert protocol.partner_lost() == {"type": "partner-disconnected"}
    assert protocol.session_answer({"sdp": "x"}) == {"type": "answer", "answer": {"sdp": "x"}}


def test_parse_pairing_request() -> None:
    assert parse_pairing_request({"type": "find-partner", "userId": " alice "}).user_id == "alice"
    assert parse_pairing_request({"type": "find-partner", "userId": ""}).user_id is None
    assert parse_pairing_request({"type": "find-partner"}).user_id is None


def test_parse_pairing_result() -> None:
    result = parse_pairing_result({"type": "partner-found", "partnerId": "bob", "initiator": True})
    assert result.partner_id == "bob"
    assert result.initiator is True

    with pytest.raises(ProtocolError):
        parse_pairing_result({"type": "partner-found"})
    with pytest.raises(ProtocolError):
        parse_pairing_result({"type": "partner-found", "partnerId": "  "})


def test_parse_ice_servers() -> None:
    servers = parse_ice_servers({"iceServers": [{"urls": "stun:a"}, {"urls": ["turn:b"], "username": "u"}]})
    assert [server.url_list() for server in servers] == [["stun:a"], ["turn:b"]]
    assert parse_ice_servers([]) == []

    with pytest.raises(ProtocolError):
        parse_ice_servers([{"urls": ""}])
