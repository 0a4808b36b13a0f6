"""Signaling message codec.

This module provides:
- SignalingMessage variants: Offer, Answer, Candidate, Bye
- decode_message / encode_message for the JSON wire format
- Envelope helpers for the room server ("send", "register", inbound)

Wire format (one JSON object per message):
    {"type": "offer", "sdp": "v=0..."}
    {"type": "answer", "sdp": "v=0..."}
    {"type": "candidate", "label": 0, "id": "0", "candidate": "candidate:..."}
    {"type": "bye"}
"""

import json
from dataclasses import dataclass
from typing import Any, Union

from rtcnego.errors import ProtocolError

__all__ = [
    "Offer",
    "Answer",
    "Candidate",
    "Bye",
    "SignalingMessage",
    "InboundEnvelope",
    "decode_message",
    "encode_message",
    "message_from_dict",
    "send_envelope",
    "register_envelope",
    "parse_inbound_envelope",
]


@dataclass(frozen=True)
class Offer:
    """Session description offer from the initiator."""

    sdp: str

    type = "offer"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "sdp": self.sdp}


@dataclass(frozen=True)
class Answer:
    """Session description answer from the responder."""

    sdp: str

    type = "answer"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "sdp": self.sdp}


@dataclass(frozen=True)
class Candidate:
    """ICE candidate.

    Attributes:
        label: Media line index (sdpMLineIndex).
        id: Media line identifier (sdpMid).
        candidate: Candidate attribute, e.g. "candidate:1 1 udp ... typ host".
    """

    label: int | None
    id: str | None
    candidate: str

    type = "candidate"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "label": self.label,
            "id": self.id,
            "candidate": self.candidate,
        }


@dataclass(frozen=True)
class Bye:
    """Explicit session termination."""

    type = "bye"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type}


SignalingMessage = Union[Offer, Answer, Candidate, Bye]


def message_from_dict(data: Any) -> SignalingMessage:
    """Build a SignalingMessage from a decoded JSON object.

    Raises:
        ProtocolError: If the object is not a valid signaling message.
    """
    if not isinstance(data, dict):
        raise ProtocolError(f"Signaling message must be an object, got {type(data).__name__}")

    msg_type = data.get("type")
    if msg_type in ("offer", "answer"):
        sdp = data.get("sdp")
        if not isinstance(sdp, str):
            raise ProtocolError(f"{msg_type} without sdp string")
        return Offer(sdp=sdp) if msg_type == "offer" else Answer(sdp=sdp)

    if msg_type == "candidate":
        candidate = data.get("candidate")
        if not isinstance(candidate, str) or not candidate:
            raise ProtocolError("candidate without candidate string")
        label = data.get("label")
        if label is not None and (isinstance(label, bool) or not isinstance(label, int)):
            raise ProtocolError(f"candidate label must be an integer, got {label!r}")
        mid = data.get("id")
        return Candidate(label=label, id=None if mid is None else str(mid), candidate=candidate)

    if msg_type == "bye":
        return Bye()

    raise ProtocolError(f"Unknown signaling message type: {msg_type!r}")


def decode_message(raw: str) -> SignalingMessage:
    """Decode a JSON signaling message.

    Raises:
        ProtocolError: On malformed JSON or an invalid message.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise ProtocolError(f"Error parsing JSON: {e}") from e
    return message_from_dict(data)


def encode_message(message: SignalingMessage) -> str:
    """Encode a signaling message as JSON."""
    return json.dumps(message.to_dict())


def send_envelope(message: SignalingMessage) -> str:
    """Wrap a message for delivery over the WebSocket channel."""
    return json.dumps({"cmd": "send", "msg": encode_message(message)})


def register_envelope(room_id: str, client_id: str) -> str:
    """Registration command sent when the WebSocket opens."""
    return json.dumps({"cmd": "register", "roomid": room_id, "clientid": client_id})


@dataclass(frozen=True)
class InboundEnvelope:
    """Envelope received from the room server.

    Attributes:
        msg: Inner message JSON (may be empty on error).
        error: Server-side error string, empty if none.
    """

    msg: str
    error: str = ""


def parse_inbound_envelope(raw: str) -> InboundEnvelope:
    """Parse an envelope received over the WebSocket.

    Raises:
        ProtocolError: If the envelope is not valid JSON or not an object.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise ProtocolError(f"Error parsing JSON: {raw[:200]}") from e
    if not isinstance(data, dict):
        raise ProtocolError("Envelope must be a JSON object")
    msg = data.get("msg") or ""
    if not isinstance(msg, str):
        raise ProtocolError("Envelope msg must be a string")
    return InboundEnvelope(msg=msg, error=str(data.get("error") or ""))
