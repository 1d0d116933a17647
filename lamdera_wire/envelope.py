from __future__ import annotations
import base64
import binascii
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from lamdera_wire.frame import DEFAULT_DISCRIMINANT, decode_frame, encode_frame
from lamdera_wire.log import get_logger

logger = get_logger(__name__)

# Wire values of the "t" field
TO_BACKEND = "ToBackend"
ELECTION = "e"


class EnvelopeType(str, Enum):
    """Classification of an inbound transport envelope."""
    MESSAGE = "message"
    ELECTION = "election"
    PROTOCOL = "protocol"
    ERROR = "error"


@dataclass
class MessageEnvelope:
    """
    Application message carried as a base64 frame:
    {
    "t": "ToBackend",
    "s": "session id",
    "c": "connection id (falls back to the session id)",
    "b": "BASE64(frame)"
    }
    """
    message: str
    session_id: Optional[str] = None
    connection_id: Optional[str] = None
    type: EnvelopeType = EnvelopeType.MESSAGE

    @classmethod
    def create(cls, session_id: str, connection_id: Optional[str], message: str) -> 'MessageEnvelope':
        return cls(message=message, session_id=session_id, connection_id=connection_id or session_id)

    def to_dict(self, discriminant: int = DEFAULT_DISCRIMINANT) -> Dict[str, Any]:
        frame = encode_frame(self.message, discriminant)
        return {
            't': TO_BACKEND,
            's': self.session_id,
            'c': self.connection_id or self.session_id,
            'b': base64.b64encode(frame).decode('ascii'),
        }

    def to_json(self, discriminant: int = DEFAULT_DISCRIMINANT) -> str:
        return json.dumps(self.to_dict(discriminant), separators=(',', ':'))


@dataclass
class ElectionEnvelope:
    """Out-of-band leader notification: {"t": "e", "l": "leader connection id"}"""
    leader_id: Optional[str]
    data: Dict[str, Any]
    type: EnvelopeType = EnvelopeType.ELECTION


@dataclass
class ProtocolEnvelope:
    """Anything else the server sends: handshakes and control signalling."""
    data: Any
    session_id: Optional[str] = None
    connection_id: Optional[str] = None
    type: EnvelopeType = EnvelopeType.PROTOCOL


@dataclass
class ErrorEnvelope:
    """Inbound data that could not be parsed at all."""
    error: str
    raw: Union[str, bytes]
    type: EnvelopeType = EnvelopeType.ERROR


ParsedEnvelope = Union[MessageEnvelope, ElectionEnvelope, ProtocolEnvelope, ErrorEnvelope]


def create_transport_message(session_id: str, connection_id: Optional[str], message: str,
                             discriminant: int = DEFAULT_DISCRIMINANT) -> str:
    """Wrap an application message into the JSON text sent over the socket"""
    return MessageEnvelope.create(session_id, connection_id, message).to_json(discriminant)


def _decode_body(body: Any, expected_discriminant: int, trace: bool = False) -> Optional[str]:
    if not isinstance(body, str):
        return None
    try:
        frame = base64.b64decode(body)
    except (binascii.Error, ValueError) as e:
        if trace:
            logger.debug("Body is not valid base64: %s", e)
        return None
    return decode_frame(frame, expected_discriminant, trace)


def parse_transport_message(raw: Union[str, bytes],
                            expected_discriminant: int = DEFAULT_DISCRIMINANT,
                            trace: bool = False) -> ParsedEnvelope:
    """
    Classify one inbound transport message.

    Order: election notification, then a decodable frame body, then protocol
    data. Frames that fail to decode fall through to protocol. Never raises;
    unparseable input yields an ErrorEnvelope.
    """
    try:
        text = raw.decode('utf-8') if isinstance(raw, (bytes, bytearray)) else raw
        data = json.loads(text)
    except (ValueError, TypeError, RecursionError) as e:
        return ErrorEnvelope(error=str(e), raw=raw)

    if not isinstance(data, dict):
        return ProtocolEnvelope(data=data)

    if data.get('t') == ELECTION or 'l' in data:
        return ElectionEnvelope(leader_id=data.get('l'), data=data)

    if data.get('b'):
        message = _decode_body(data['b'], expected_discriminant, trace)
        if message is not None:
            return MessageEnvelope(message=message, session_id=data.get('s'), connection_id=data.get('c'))

    return ProtocolEnvelope(data=data, session_id=data.get('s'), connection_id=data.get('c'))
