"""
Ghost Net Core Module

Leaf components shared by the overlay:
- Configuration and error taxonomy
- Node identity (Ed25519) and signature service with replay window
- Resonance calculator (affinity score)
- Payload compression
- Observability metrics
- Node context bundling the above
"""

from core.errors import (
    GhostNetError,
    SignatureInvalid,
    MalformedMessage,
    HandshakeTimeout,
    CompressionFailure,
    CapacityExceeded,
    ConfigError,
)
from core.config import GhostNetConfig, ResonanceConfig, RoutingConfig, PeerConfig, TransmissionConfig
from core.clock import SystemClock, ManualClock, now_ms
from core.identity import Identity, compute_peer_id
from core.signature import SignatureService
from core.resonance import ResonanceCalculator
from core.compression import CompressionEngine, CompressionAlgorithm, CompressionResult
from core.metrics import TransmissionMetrics, NetworkMetrics, smoothness
from core.context import NodeContext, AffinityState

__all__ = [
    "GhostNetError",
    "SignatureInvalid",
    "MalformedMessage",
    "HandshakeTimeout",
    "CompressionFailure",
    "CapacityExceeded",
    "ConfigError",
    "GhostNetConfig",
    "ResonanceConfig",
    "RoutingConfig",
    "PeerConfig",
    "TransmissionConfig",
    "SystemClock",
    "ManualClock",
    "now_ms",
    "Identity",
    "compute_peer_id",
    "SignatureService",
    "ResonanceCalculator",
    "CompressionEngine",
    "CompressionAlgorithm",
    "CompressionResult",
    "TransmissionMetrics",
    "NetworkMetrics",
    "smoothness",
    "NodeContext",
    "AffinityState",
]
