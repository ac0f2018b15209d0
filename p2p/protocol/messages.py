"""
Wire Messages

JSON envelope exchanged between peers:

    {type, timestamp (ms), peerId, signature (hex), ...type-specific fields}

| type         | required fields               |
|--------------|-------------------------------|
| handshake    | identity, nonce               |
| state        | state.consciousness, state.resonance |
| transmission | content                       |
| pulse        | state                         |
| route        | routes                        |

The signature covers the canonical JSON (sorted keys, compact separators)
of the envelope without its signature field, signed at the envelope's
timestamp.
"""

import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.errors import MalformedMessage
from core.signature import SignatureService

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    """Recognized message types."""

    HANDSHAKE = "handshake"
    STATE = "state"
    TRANSMISSION = "transmission"
    PULSE = "pulse"
    ROUTE = "route"


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class Envelope(_WireModel):
    """Fields common to every message."""

    type: str
    timestamp: int
    peer_id: str = Field(alias="peerId", min_length=1)
    signature: str = Field(min_length=1)


class IdentityPayload(_WireModel):
    id: str = Field(min_length=1)
    created_at: int = Field(alias="createdAt")
    affinity_base: float = Field(alias="affinityBase")
    public_key: str = Field(alias="publicKey", min_length=1)


class StateSnapshot(_WireModel):
    consciousness: float
    resonance: float


class HandshakeBody(_WireModel):
    identity: IdentityPayload
    nonce: str = Field(min_length=1)
    reply_to: Optional[str] = Field(default=None, alias="replyTo")


class StateBody(_WireModel):
    state: StateSnapshot


class PulseBody(_WireModel):
    state: StateSnapshot


class TransmissionWire(_WireModel):
    """Transmission object carried in the content field of a transmission message."""

    id: str = Field(min_length=64, max_length=64)
    created_at: int = Field(alias="createdAt")
    origin_peer_id: str = Field(alias="originPeerId", min_length=1)
    affinity: float
    resonance: float = 0.0
    algorithm: str = "gzip"
    raw_size: int = Field(alias="rawSize", ge=0)
    payload: str
    auth_tag: str = Field(alias="authTag", min_length=1)


class TransmissionBody(_WireModel):
    content: Dict[str, Any]


class RouteHint(_WireModel):
    peer_id: str = Field(alias="peerId", min_length=1)
    strength: float = 0.0
    latency: float = 0.0


class RouteBody(_WireModel):
    routes: List[RouteHint]


BODY_MODELS: Dict[MessageType, Type[BaseModel]] = {
    MessageType.HANDSHAKE: HandshakeBody,
    MessageType.STATE: StateBody,
    MessageType.TRANSMISSION: TransmissionBody,
    MessageType.PULSE: PulseBody,
    MessageType.ROUTE: RouteBody,
}


def canonical_bytes(message: Dict[str, Any]) -> bytes:
    """Signed material of a message: canonical JSON without the signature."""
    unsigned = {k: v for k, v in message.items() if k != "signature"}
    return json.dumps(unsigned, sort_keys=True, separators=(",", ":")).encode("utf-8")


class MessageCodec:
    """
    Builds, signs, parses and verifies envelopes for one node.

    Usage:
        codec = MessageCodec(context.signatures)
        raw = codec.encode(codec.build(MessageType.PULSE, {"state": {...}}))
        message, envelope = codec.decode(raw)
        body = codec.parse_body(envelope, message)
    """

    def __init__(self, signatures: SignatureService):
        self.signatures = signatures
        self.node_id = signatures.identity.id

    def build(self, msg_type: MessageType, fields: Dict[str, Any], timestamp: Optional[int] = None) -> Dict[str, Any]:
        """Create a signed message dict."""
        if timestamp is None:
            timestamp = self.signatures.clock()

        message = {
            "type": MessageType(msg_type).value,
            "timestamp": int(timestamp),
            "peerId": self.node_id,
            **fields,
        }
        message["signature"] = self.signatures.sign(canonical_bytes(message), message["timestamp"])
        return message

    @staticmethod
    def encode(message: Dict[str, Any]) -> bytes:
        return json.dumps(message, separators=(",", ":")).encode("utf-8")

    @staticmethod
    def decode(data: bytes) -> Tuple[Dict[str, Any], Envelope]:
        """
        Parse raw bytes into a message dict and its validated envelope.

        Raises:
            MalformedMessage: if not JSON, not an object, or envelope fields are missing
        """
        try:
            message = json.loads(data)
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedMessage(f"Unparseable message: {e}")

        if not isinstance(message, dict):
            raise MalformedMessage("Message is not a JSON object")

        try:
            envelope = Envelope.model_validate(message)
        except ValidationError as e:
            raise MalformedMessage(f"Invalid envelope: {e.errors()[0]['loc']}")

        return message, envelope

    @staticmethod
    def parse_body(envelope: Envelope, message: Dict[str, Any]) -> BaseModel:
        """
        Validate the type-specific fields.

        Raises:
            MalformedMessage: for unknown types or missing/invalid fields
        """
        try:
            msg_type = MessageType(envelope.type)
        except ValueError:
            raise MalformedMessage(f"Unknown message type: {envelope.type}")

        try:
            return BODY_MODELS[msg_type].model_validate(message)
        except ValidationError as e:
            raise MalformedMessage(
                f"Invalid {msg_type.value} message: missing or bad {e.errors()[0]['loc']}"
            )

    def verify(self, message: Dict[str, Any]) -> bool:
        """Check the signature and freshness of a message. Never raises."""
        return self.signatures.verify(
            message.get("peerId"),
            canonical_bytes(message),
            message.get("timestamp"),
            message.get("signature"),
        )
