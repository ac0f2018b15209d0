"""
Transport contract consumed by the peer connection manager.

A transport moves opaque byte messages over connections identified by a
ConnectionHandle. Message and close callbacks are plain functions called on
the event loop; messages that arrive before a callback is registered are
held and delivered, in order, at registration.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

MessageCallback = Callable[[bytes], None]
CloseCallback = Callable[[], None]


@dataclass(frozen=True)
class ConnectionHandle:
    """Opaque reference to one transport connection."""

    id: str
    address: str
    outbound: bool = False

    def __str__(self) -> str:
        direction = "out" if self.outbound else "in"
        return f"{self.address}/{direction}/{self.id[:8]}"


class Transport(ABC):
    """Abstract byte-message transport."""

    address: str = ""

    async def start(self):
        """Begin accepting connections (no-op by default)."""

    async def shutdown(self):
        """Close every connection and stop accepting (no-op by default)."""

    @abstractmethod
    async def accept_connection(self) -> ConnectionHandle:
        """Wait for the next inbound connection."""

    @abstractmethod
    async def connect(self, address: str) -> ConnectionHandle:
        """
        Open an outbound connection.

        Raises:
            ConnectionError: if the address cannot be reached
        """

    @abstractmethod
    async def send(self, handle: ConnectionHandle, data: bytes):
        """
        Send one message.

        Raises:
            ConnectionError: if the connection is closed
        """

    @abstractmethod
    def on_message(self, handle: ConnectionHandle, callback: MessageCallback):
        """Register the message callback of a connection."""

    @abstractmethod
    def on_close(self, handle: ConnectionHandle, callback: CloseCallback):
        """Register the close callback of a connection (fires at most once)."""

    @abstractmethod
    async def close(self, handle: ConnectionHandle):
        """Close a connection. Closing twice is a no-op."""
