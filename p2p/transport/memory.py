"""
In-process transport.

MemoryNetwork is a registry of MemoryTransport endpoints keyed by address.
Connecting creates a linked pair of connection ends; bytes sent on one end
are delivered synchronously, in order, to the other end's message callback.
Used by the test suite and by local simulations.
"""

import asyncio
import logging
import uuid
from typing import Dict, List, Optional

from .base import CloseCallback, ConnectionHandle, MessageCallback, Transport

logger = logging.getLogger(__name__)


class _End:
    """One side of an in-memory connection."""

    def __init__(self, handle: ConnectionHandle):
        self.handle = handle
        self.peer: Optional["_End"] = None
        self.message_callback: Optional[MessageCallback] = None
        self.close_callback: Optional[CloseCallback] = None
        self.backlog: List[bytes] = []
        self.closed = False
        self.close_fired = False

    def deliver(self, data: bytes):
        if self.closed:
            return
        if self.message_callback is None:
            self.backlog.append(data)
        else:
            self.message_callback(data)

    def mark_closed(self):
        self.closed = True
        self.backlog.clear()
        self.fire_close()

    def fire_close(self):
        if self.closed and not self.close_fired and self.close_callback is not None:
            self.close_fired = True
            self.close_callback()


class MemoryNetwork:
    """Address registry shared by the transports of one simulation."""

    def __init__(self):
        self.transports: Dict[str, "MemoryTransport"] = {}

    def transport(self, address: str) -> "MemoryTransport":
        """Create and register a transport listening on address."""
        if address in self.transports:
            raise ValueError(f"Address already in use: {address}")
        transport = MemoryTransport(self, address)
        self.transports[address] = transport
        return transport

    def unregister(self, address: str):
        self.transports.pop(address, None)


class MemoryTransport(Transport):
    """Transport endpoint of a MemoryNetwork."""

    def __init__(self, network: MemoryNetwork, address: str):
        self.network = network
        self.address = address
        self.muted = False

        self._ends: Dict[str, _End] = {}
        self._incoming: asyncio.Queue = asyncio.Queue()

        self.stats = {
            "connections_accepted": 0,
            "connections_initiated": 0,
            "messages_sent": 0,
            "messages_dropped": 0,
            "bytes_sent": 0,
        }

    async def accept_connection(self) -> ConnectionHandle:
        handle = await self._incoming.get()
        self.stats["connections_accepted"] += 1
        return handle

    async def connect(self, address: str) -> ConnectionHandle:
        remote = self.network.transports.get(address)
        if remote is None:
            raise ConnectionError(f"No transport listening on {address}")

        connection_id = uuid.uuid4().hex
        local_end = _End(ConnectionHandle(connection_id, address, outbound=True))
        remote_end = _End(ConnectionHandle(connection_id, self.address, outbound=False))
        local_end.peer = remote_end
        remote_end.peer = local_end

        self._ends[connection_id] = local_end
        remote._ends[connection_id] = remote_end
        remote._incoming.put_nowait(remote_end.handle)

        self.stats["connections_initiated"] += 1
        logger.debug(f"{self.address} connected to {address}")
        return local_end.handle

    async def send(self, handle: ConnectionHandle, data: bytes):
        end = self._ends.get(handle.id)
        if end is None or end.closed:
            raise ConnectionError(f"Connection {handle} is closed")

        if self.muted:
            self.stats["messages_dropped"] += 1
            return

        self.stats["messages_sent"] += 1
        self.stats["bytes_sent"] += len(data)
        end.peer.deliver(bytes(data))

    def on_message(self, handle: ConnectionHandle, callback: MessageCallback):
        end = self._ends.get(handle.id)
        if end is None:
            return
        end.message_callback = callback
        backlog, end.backlog = end.backlog, []
        for data in backlog:
            callback(data)

    def on_close(self, handle: ConnectionHandle, callback: CloseCallback):
        end = self._ends.get(handle.id)
        if end is None:
            callback()
            return
        end.close_callback = callback
        end.fire_close()

    async def close(self, handle: ConnectionHandle):
        end = self._ends.pop(handle.id, None)
        if end is None:
            return
        end.mark_closed()

        peer = end.peer
        if peer is not None and not peer.closed:
            peer.mark_closed()
            remote = self.network.transports.get(handle.address)
            if remote is not None:
                remote._ends.pop(handle.id, None)

    async def shutdown(self):
        for end in list(self._ends.values()):
            await self.close(end.handle)
        self.network.unregister(self.address)

    def get_stats(self) -> Dict:
        return {**self.stats, "active_connections": len(self._ends)}
