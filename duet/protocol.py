"""
Signaling wire protocol shared by the coordinator and the client.

Every frame is a JSON object whose ``type`` field selects the message kind.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from . import DuetError


class ProtocolError(DuetError):
    """Raised when an inbound frame is malformed or of an unknown kind."""


class MessageType(str, Enum):
    PAIRING_REQUEST = "find-partner"
    PAIRING_RESULT = "partner-found"
    SESSION_OFFER = "offer"
    SESSION_ANSWER = "answer"
    CONNECTIVITY_CANDIDATE = "ice-candidate"
    PARTNER_LOST = "partner-disconnected"
    PING = "ping"
    PONG = "pong"


# Logical names accepted on input in addition to the wire names.
TYPE_ALIASES: Dict[str, MessageType] = {
    "pairing-request": MessageType.PAIRING_REQUEST,
    "pairing-result": MessageType.PAIRING_RESULT,
    "session-offer": MessageType.SESSION_OFFER,
    "session-answer": MessageType.SESSION_ANSWER,
    "connectivity-candidate": MessageType.CONNECTIVITY_CANDIDATE,
    "partner-lost": MessageType.PARTNER_LOST,
}

RELAYED_TYPES = frozenset(
    {
        MessageType.SESSION_OFFER,
        MessageType.SESSION_ANSWER,
        MessageType.CONNECTIVITY_CANDIDATE,
    }
)

# Field carrying the opaque blob for each relayed type.
PAYLOAD_FIELDS: Dict[MessageType, str] = {
    MessageType.SESSION_OFFER: "offer",
    MessageType.SESSION_ANSWER: "answer",
    MessageType.CONNECTIVITY_CANDIDATE: "candidate",
}


def message_type(message: Any) -> Optional[MessageType]:
    """Return the :class:`MessageType` of ``message`` or ``None`` if unknown."""

    if not isinstance(message, dict):
        return None
    raw = message.get("type")
    if not isinstance(raw, str):
        return None
    key = raw.strip().lower()
    if key in TYPE_ALIASES:
        return TYPE_ALIASES[key]
    try:
        return MessageType(key)
    except ValueError:
        return None


def pairing_request(user_id: str) -> dict:
    return {"type": MessageType.PAIRING_REQUEST.value, "userId": user_id}


def pairing_result(partner_id: str, *, initiator: bool) -> dict:
    return {
        "type": MessageType.PAIRING_RESULT.value,
        "partnerId": partner_id,
        "initiator": bool(initiator),
    }


def partner_lost() -> dict:
    return {"type": MessageType.PARTNER_LOST.value}


def session_offer(description: Any) -> dict:
    return {"type": MessageType.SESSION_OFFER.value, "offer": description}


def session_answer(description: Any) -> dict:
    return {"type": MessageType.SESSION_ANSWER.value, "answer": description}


def connectivity_candidate(candidate: Any) -> dict:
    return {"type": MessageType.CONNECTIVITY_CANDIDATE.value, "candidate": candidate}
