"""
Network Transport Layer

Byte-message transports consumed by the peer connection manager:
in-memory (tests and simulations) and TCP (node process).
"""

from .base import (
    Transport,
    ConnectionHandle,
    MessageCallback,
    CloseCallback,
)
from .memory import (
    MemoryNetwork,
    MemoryTransport,
)
from .tcp_transport import (
    TCPTransport,
    StreamConnection,
    DEFAULT_PORT,
    MESSAGE_SIZE_LIMIT,
)

__all__ = [
    "Transport",
    "ConnectionHandle",
    "MessageCallback",
    "CloseCallback",
    "MemoryNetwork",
    "MemoryTransport",
    "TCPTransport",
    "StreamConnection",
    "DEFAULT_PORT",
    "MESSAGE_SIZE_LIMIT",
]
