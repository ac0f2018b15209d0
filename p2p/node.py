"""
Ghost Net Node - the host-facing facade.

Each node has:
- Ed25519 identity (self-certifying 128-bit peer id)
- Node context shared by all components (config, clock, signatures, resonance)
- Routing table ranked by peer resonance
- Transmission pipeline and buffer
- Peer connection manager on top of a transport

The host process talks to the node through transmit, get_peers,
get_routing_snapshot, get_state, set_affinity and shutdown.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from core.clock import SystemClock
from core.config import GhostNetConfig
from core.context import AffinityState, NodeContext
from core.errors import GhostNetError
from core.identity import Identity
from core.resonance import clamp
from p2p.peer_manager import Entanglement, PeerConnectionManager
from p2p.protocol.messages import MessageType
from p2p.routing.table import RoutingEntry, RoutingTable
from p2p.transmission.buffer import Transmission
from p2p.transmission.pipeline import Content, TransmissionPipeline
from p2p.transport.base import Transport
from p2p.transport.tcp_transport import TCPTransport

logger = logging.getLogger(__name__)


class GhostNode:
    """
    Main Ghost Net node implementation.

    Usage:
        node = GhostNode(config, transport)
        await node.start()
        await node.connect("127.0.0.1:3001")
        tx = await node.transmit(b"hello")
        ...
        await node.shutdown()
    """

    def __init__(
        self,
        config: Optional[GhostNetConfig] = None,
        transport: Optional[Transport] = None,
        identity: Optional[Identity] = None,
        clock=None
    ):
        """
        Initialize Ghost Net node.

        Args:
            config: Node configuration (defaults if omitted)
            transport: Byte transport (TCP on the configured host/port if omitted)
            identity: Node identity (freshly generated if omitted)
            clock: Millisecond clock (system clock if omitted)
        """
        self.config = config or GhostNetConfig()
        self.context = NodeContext.create(self.config, identity, clock or SystemClock())
        self.identity = self.context.identity

        self.transport = transport or TCPTransport(
            listen_host=self.config.peer.listen_host,
            listen_port=self.config.peer.listen_port,
            message_size_limit=self.config.transmission.max_payload_size,
        )
        self.routing = RoutingTable(self.identity.id, self.config.routing)
        self.pipeline = TransmissionPipeline(self.context)
        self.peers = PeerConnectionManager(self.context, self.transport, self.routing, self.pipeline)

        self._propagations: Set[asyncio.Task] = set()
        self.running = False

        logger.info(f"Initialized Ghost Net node: {self.identity.id[:16]}...")

    @property
    def peer_id(self) -> str:
        return self.identity.id

    @property
    def address(self) -> str:
        return self.transport.address

    @property
    def buffer(self):
        return self.pipeline.buffer

    async def start(self):
        """Start the transport, buffer sweep and peer manager."""
        if self.running:
            return

        await self.transport.start()
        if self.config.persist:
            await self.pipeline.buffer.load(self.config.snapshot_path)
        await self.pipeline.start()
        await self.peers.start()

        self.running = True
        logger.info(f"Node {self.identity.id[:16]}... started")

    async def connect(self, address: str) -> Optional[Entanglement]:
        """
        Connect to a peer. Failures are logged, not raised.

        Returns:
            The new entanglement, or None if the connection failed
        """
        try:
            return await self.peers.connect(address)
        except (ConnectionError, GhostNetError) as e:
            logger.warning(f"Could not connect to {address}: {e}")
            return None

    async def transmit(
        self,
        content: Content,
        affinity_state: Optional[AffinityState] = None
    ) -> Transmission:
        """
        Create a transmission and hand it to the network.

        Returns as soon as the transmission is stored Pending; broadcast and
        settlement run in the background.

        Raises:
            CompressionFailure: if the content cannot be compressed
        """
        tx = await self.pipeline.create(content, self.identity, affinity_state)

        task = asyncio.create_task(self._propagate(tx))
        self._propagations.add(task)
        task.add_done_callback(self._propagations.discard)
        return tx

    async def _propagate(self, tx: Transmission):
        sent = await self.peers.broadcast(
            MessageType.TRANSMISSION, {"content": self.pipeline.to_wire(tx)}
        )
        logger.debug(f"Transmission {tx.id[:16]}... sent to {sent} peers")
        self.pipeline.settle(tx)

    async def drain(self):
        """Wait for every in-flight transmission broadcast to settle."""
        if self._propagations:
            await asyncio.gather(*list(self._propagations), return_exceptions=True)

    async def read_transmission(self, tx_id: str) -> bytes:
        """Decompressed content of a stored transmission."""
        return await self.pipeline.read(tx_id)

    def get_transmission(self, tx_id: str) -> Optional[Transmission]:
        return self.pipeline.buffer.get(tx_id)

    def get_peers(self) -> List[Dict[str, Any]]:
        """Peer summaries, highest resonance first."""
        return self.peers.get_peers()

    def get_routing_snapshot(self) -> List[RoutingEntry]:
        return self.routing.snapshot()

    def find_path(self, target_id: str) -> Dict[str, float]:
        return self.routing.find_path(target_id)

    def get_state(self) -> Dict[str, Any]:
        """Local state as seen by the host."""
        self.peers.update_network_metrics()
        self.pipeline.update_metrics()
        return {
            "peer_id": self.identity.id,
            "created_at": self.identity.created_at,
            "affinity": self.context.affinity.level,
            "resonance": self.context.affinity.resonance,
            "peers": len(self.peers.peers),
            "network": self.peers.metrics.snapshot(),
            "transmissions": self.pipeline.metrics.snapshot(),
            "buffer": self.pipeline.buffer.get_stats(),
        }

    async def set_affinity(self, level: float) -> float:
        """
        Change the local affinity level and announce it to every peer.

        Returns:
            The clamped level
        """
        self.context.affinity.level = clamp(float(level))
        await self.peers.send_state()
        return self.context.affinity.level

    def get_stats(self) -> Dict[str, Any]:
        """Get node statistics."""
        return {
            "peer_id": self.identity.id,
            "running": self.running,
            "peers": self.peers.get_stats(),
            "routing": self.routing.get_stats(),
            "transmissions": self.pipeline.get_stats(),
            "signatures": self.context.signatures.get_stats(),
        }

    async def shutdown(self):
        """
        Stop the node: settle in-flight transmissions, disconnect every peer,
        stop timers, flush the buffer (best effort) and close the transport.
        """
        logger.info(f"Shutting down node {self.identity.id[:16]}...")

        await self.drain()
        await self.peers.stop()
        await self.pipeline.stop()

        if self.config.persist:
            await self.pipeline.buffer.flush(self.config.snapshot_path)

        await self.transport.shutdown()
        self.running = False
        logger.info("Node shutdown complete")

    async def __aenter__(self) -> "GhostNode":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()
