"""
TCP Network Transport

Carries Ghost Net envelopes between processes over asyncio streams.

Features:
- asyncio server for inbound connections (port 0 binds an ephemeral port)
- Outbound connections with a connect timeout
- Length-prefixed message framing
- Per-connection reader task and statistics
"""

import asyncio
import time
import struct
import uuid
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .base import CloseCallback, ConnectionHandle, MessageCallback, Transport

logger = logging.getLogger(__name__)


# Transport constants
DEFAULT_PORT = 3000
MESSAGE_SIZE_LIMIT = 50 * 1024 * 1024  # Matches the maximum transmission payload
CONNECTION_TIMEOUT = 10  # Connection attempt timeout (seconds)
FRAME_HEADER = struct.Struct(">I")


def frame(payload: bytes) -> bytes:
    """Wire format: [length:4 bytes big-endian][payload:N bytes]"""
    return FRAME_HEADER.pack(len(payload)) + payload


@dataclass
class StreamConnection:
    """An open TCP connection and its bookkeeping."""

    handle: ConnectionHandle
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter

    connected_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)

    bytes_sent: int = 0
    bytes_received: int = 0
    messages_sent: int = 0
    messages_received: int = 0

    message_callback: Optional[MessageCallback] = None
    close_callback: Optional[CloseCallback] = None
    backlog: List[bytes] = field(default_factory=list)
    reader_task: Optional[asyncio.Task] = None
    closed: bool = False

    def update_activity(self):
        """Update last activity timestamp."""
        self.last_activity = time.time()


class TCPTransport(Transport):
    """
    TCP-based transport for the peer connection manager.

    Handles are opaque; the manager learns who is on the other end from
    the handshake, not from the socket address.
    """

    def __init__(
        self,
        listen_host: str = "0.0.0.0",
        listen_port: int = DEFAULT_PORT,
        message_size_limit: int = MESSAGE_SIZE_LIMIT
    ):
        """
        Initialize TCP transport.

        Args:
            listen_host: Host to listen on
            listen_port: Port to listen on (0 = ephemeral)
            message_size_limit: Largest accepted frame in bytes
        """
        self.listen_host = listen_host
        self.listen_port = listen_port
        self.message_size_limit = message_size_limit

        # Active connections (handle id -> StreamConnection)
        self.connections: Dict[str, StreamConnection] = {}

        self.server: Optional[asyncio.AbstractServer] = None
        self._incoming: asyncio.Queue = asyncio.Queue()

        # Statistics
        self.stats = {
            "connections_accepted": 0,
            "connections_initiated": 0,
            "connections_failed": 0,
            "messages_sent": 0,
            "messages_received": 0,
            "bytes_sent": 0,
            "bytes_received": 0,
            "oversized_frames": 0,
        }

    @property
    def address(self) -> str:
        return f"{self.listen_host}:{self.listen_port}"

    async def start(self):
        """Start TCP server to accept incoming connections."""
        self.server = await asyncio.start_server(
            self._handle_incoming_connection,
            self.listen_host,
            self.listen_port
        )
        # Resolve the actual port when bound to 0
        self.listen_port = self.server.sockets[0].getsockname()[1]
        logger.info(f"Server listening on {self.address}")

    async def _handle_incoming_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter
    ):
        peer = writer.get_extra_info("peername") or ("unknown", 0)
        address = f"{peer[0]}:{peer[1]}"
        logger.info(f"Incoming connection from {address}")

        connection = self._register(reader, writer, address, outbound=False)
        self.stats["connections_accepted"] += 1
        await self._incoming.put(connection.handle)

    async def accept_connection(self) -> ConnectionHandle:
        return await self._incoming.get()

    async def connect(self, address: str) -> ConnectionHandle:
        """
        Connect to a remote node.

        Args:
            address: host:port

        Raises:
            ConnectionError: if the connection cannot be opened
        """
        try:
            host, port = address.rsplit(":", 1)
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, int(port)),
                timeout=CONNECTION_TIMEOUT
            )
        except (OSError, ValueError, asyncio.TimeoutError) as e:
            self.stats["connections_failed"] += 1
            raise ConnectionError(f"Failed to connect to {address}: {e}") from e

        connection = self._register(reader, writer, address, outbound=True)
        self.stats["connections_initiated"] += 1
        logger.info(f"Connected to {address}")
        return connection.handle

    def _register(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        address: str,
        outbound: bool
    ) -> StreamConnection:
        handle = ConnectionHandle(uuid.uuid4().hex, address, outbound=outbound)
        connection = StreamConnection(handle=handle, reader=reader, writer=writer)
        self.connections[handle.id] = connection
        connection.reader_task = asyncio.create_task(self._read_frames(connection))
        return connection

    async def _read_frames(self, connection: StreamConnection):
        """Read length-prefixed frames until the stream ends (background task)."""
        try:
            while True:
                header = await connection.reader.readexactly(FRAME_HEADER.size)
                (length,) = FRAME_HEADER.unpack(header)

                if length > self.message_size_limit:
                    self.stats["oversized_frames"] += 1
                    logger.warning(f"Frame of {length} bytes from {connection.handle} exceeds limit")
                    break

                payload = await connection.reader.readexactly(length)

                connection.bytes_received += FRAME_HEADER.size + length
                connection.messages_received += 1
                connection.update_activity()
                self.stats["messages_received"] += 1
                self.stats["bytes_received"] += FRAME_HEADER.size + length

                if connection.message_callback is None:
                    connection.backlog.append(payload)
                else:
                    connection.message_callback(payload)

        except asyncio.IncompleteReadError:
            logger.info(f"Connection closed by {connection.handle.address}")
        except ConnectionError as e:
            logger.info(f"Connection to {connection.handle.address} lost: {e}")
        finally:
            await self._teardown(connection)

    async def send(self, handle: ConnectionHandle, data: bytes):
        connection = self.connections.get(handle.id)
        if connection is None or connection.closed:
            raise ConnectionError(f"Connection {handle} is closed")

        framed = frame(data)
        try:
            connection.writer.write(framed)
            await connection.writer.drain()
        except (OSError, RuntimeError) as e:
            raise ConnectionError(f"Error sending to {handle.address}: {e}") from e

        connection.bytes_sent += len(framed)
        connection.messages_sent += 1
        connection.update_activity()
        self.stats["messages_sent"] += 1
        self.stats["bytes_sent"] += len(framed)

    def on_message(self, handle: ConnectionHandle, callback: MessageCallback):
        connection = self.connections.get(handle.id)
        if connection is None:
            return
        connection.message_callback = callback
        backlog, connection.backlog = connection.backlog, []
        for data in backlog:
            callback(data)

    def on_close(self, handle: ConnectionHandle, callback: CloseCallback):
        connection = self.connections.get(handle.id)
        if connection is None:
            callback()
            return
        connection.close_callback = callback

    async def close(self, handle: ConnectionHandle):
        connection = self.connections.get(handle.id)
        if connection is None:
            return
        task = connection.reader_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        await self._teardown(connection)

    async def _teardown(self, connection: StreamConnection):
        if connection.closed:
            return
        connection.closed = True
        self.connections.pop(connection.handle.id, None)

        connection.writer.close()
        try:
            await connection.writer.wait_closed()
        except (OSError, ConnectionError):
            pass

        if connection.close_callback is not None:
            connection.close_callback()

    def get_connection_stats(self, handle: ConnectionHandle) -> Optional[Dict]:
        """Get statistics for a specific connection."""
        connection = self.connections.get(handle.id)

        if not connection:
            return None

        return {
            "address": connection.handle.address,
            "outbound": connection.handle.outbound,
            "connected_for": f"{(time.time() - connection.connected_at):.1f}s",
            "bytes_sent": connection.bytes_sent,
            "bytes_received": connection.bytes_received,
            "messages_sent": connection.messages_sent,
            "messages_received": connection.messages_received,
        }

    def get_stats(self) -> Dict:
        """Get transport statistics."""
        return {
            **self.stats,
            "active_connections": len(self.connections),
        }

    async def shutdown(self):
        """Close all connections and the server."""
        logger.info("Shutting down transport...")

        for connection in list(self.connections.values()):
            await self.close(connection.handle)

        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            self.server = None

        logger.info("Transport shutdown complete")
