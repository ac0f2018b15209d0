"""
Wire Protocol

Signed JSON envelopes exchanged between peers.
"""

from .messages import (
    MessageCodec,
    MessageType,
    Envelope,
    HandshakeBody,
    StateBody,
    TransmissionBody,
    TransmissionWire,
    PulseBody,
    RouteBody,
    canonical_bytes,
)

__all__ = [
    "MessageCodec",
    "MessageType",
    "Envelope",
    "HandshakeBody",
    "StateBody",
    "TransmissionBody",
    "TransmissionWire",
    "PulseBody",
    "RouteBody",
    "canonical_bytes",
]
