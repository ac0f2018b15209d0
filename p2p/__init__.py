"""
Ghost Net P2P Layer

Components:
- Protocol: signed JSON envelopes (handshake, state, transmission, pulse, route)
- Routing: resonance-ranked routing table with per-branch path search
- Transmission: pending/verified/archived buffer and pipeline
- Peer manager: handshake, heartbeat, dispatch, dead-peer cleanup
- Transport: in-memory and TCP byte transports
- Node: host-facing facade
"""

from .node import GhostNode
from .peer_manager import PeerConnectionManager, Entanglement, ConnectionState
from .routing import RoutingTable, RoutingEntry
from .transmission import Transmission, TransmissionBuffer, TransmissionPipeline, TransmissionState
from .transport import Transport, ConnectionHandle, MemoryNetwork, MemoryTransport, TCPTransport

__all__ = [
    "GhostNode",
    "PeerConnectionManager",
    "Entanglement",
    "ConnectionState",
    "RoutingTable",
    "RoutingEntry",
    "Transmission",
    "TransmissionBuffer",
    "TransmissionPipeline",
    "TransmissionState",
    "Transport",
    "ConnectionHandle",
    "MemoryNetwork",
    "MemoryTransport",
    "TCPTransport",
]
