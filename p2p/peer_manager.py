"""
Peer Connection Manager

Owns every connection of a node: the handshake protocol, per-peer heartbeat,
message dispatch into the routing table and transmission pipeline, and
dead-peer cleanup.

Connection lifecycle:

    CONNECTING -> HANDSHAKE_INITIATED -> VERIFIED -> ACTIVE -> DISCONNECTED
                  HANDSHAKE_INITIATED ----------------------> DISCONNECTED
                  (timeout or signature failure)

Each connection has a bounded inbox filled by the transport's message
callback and a reader task draining it in arrival order, so messages from
one peer are always handled in the order they arrived.
"""

import asyncio
import logging
import secrets
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from core.context import NodeContext
from core.errors import (
    GhostNetError,
    HandshakeTimeout,
    MalformedMessage,
    SignatureInvalid,
)
from core.metrics import NetworkMetrics
from p2p.protocol.messages import (
    HandshakeBody,
    MessageCodec,
    MessageType,
    PulseBody,
    RouteBody,
    StateBody,
    TransmissionBody,
)
from p2p.routing.table import RoutingTable
from p2p.transmission.pipeline import TransmissionPipeline
from p2p.transport.base import ConnectionHandle, Transport

logger = logging.getLogger(__name__)


DEAD_PEER_MEMORY = 1000  # Recently disconnected peers remembered for stats


class ConnectionState(Enum):
    """Connection state machine."""
    CONNECTING = "connecting"
    HANDSHAKE_INITIATED = "handshake_initiated"
    VERIFIED = "verified"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


@dataclass
class Entanglement:
    """A live, authenticated peer connection and its running affinity."""

    peer_id: str
    connection_handle: ConnectionHandle
    established_at: int
    last_heartbeat_at: int
    resonance: float = 0.0
    state: ConnectionState = ConnectionState.ACTIVE
    remote_affinity: float = 0.0
    remote_created_at: int = 0
    average_latency: float = 0.0
    messages_received: int = 0
    last_resonance: float = 0.0

    def summary(self, strength: Optional[float] = None) -> Dict[str, Any]:
        return {
            "peer_id": self.peer_id,
            "address": self.connection_handle.address,
            "outbound": self.connection_handle.outbound,
            "state": self.state.value,
            "resonance": self.resonance,
            "strength": strength,
            "remote_affinity": self.remote_affinity,
            "established_at": self.established_at,
            "last_heartbeat_at": self.last_heartbeat_at,
            "average_latency": self.average_latency,
            "messages_received": self.messages_received,
        }


@dataclass
class Connection:
    """Transport connection tracked from accept/connect until close."""

    handle: ConnectionHandle
    inbox: asyncio.Queue
    state: ConnectionState = ConnectionState.CONNECTING
    nonce: str = field(default_factory=lambda: secrets.token_hex(16))
    peer_id: Optional[str] = None
    reader_task: Optional[asyncio.Task] = None
    heartbeat_task: Optional[asyncio.Task] = None
    ready: Optional[asyncio.Future] = None
    closed: bool = False


class PeerConnectionManager:
    """
    Manages entanglements with remote peers.

    Usage:
        manager = PeerConnectionManager(context, transport, routing, pipeline)
        await manager.start()
        entanglement = await manager.connect("127.0.0.1:3001")
        await manager.send_state()
        ...
        await manager.stop()
    """

    def __init__(
        self,
        context: NodeContext,
        transport: Transport,
        routing: RoutingTable,
        pipeline: TransmissionPipeline,
        metrics: Optional[NetworkMetrics] = None
    ):
        """
        Initialize peer connection manager.

        Args:
            context: Node context (identity, clock, signatures, resonance)
            transport: Byte transport to peers
            routing: Routing table driven by peer resonance
            pipeline: Pipeline receiving inbound transmissions
            metrics: Network metrics (created if omitted)
        """
        self.context = context
        self.config = context.config.peer
        self.transport = transport
        self.routing = routing
        self.pipeline = pipeline
        self.metrics = metrics or NetworkMetrics()
        self.codec = MessageCodec(context.signatures)
        self.node_id = context.identity.id

        # Established peers (peer_id -> Entanglement)
        self.peers: Dict[str, Entanglement] = {}

        # Every open connection, established or not (handle id -> Connection)
        self.connections: Dict[str, Connection] = {}

        # Recently disconnected peers (peer_id -> disconnect time)
        self.dead_peers: "OrderedDict[str, int]" = OrderedDict()

        self._handlers: Dict[MessageType, Callable[[Entanglement, Any], Awaitable[None]]] = {
            MessageType.HANDSHAKE: self._on_handshake_after_established,
            MessageType.STATE: self._on_state,
            MessageType.TRANSMISSION: self._on_transmission,
            MessageType.PULSE: self._on_pulse,
            MessageType.ROUTE: self._on_route,
        }

        self._accept_task: Optional[asyncio.Task] = None
        self._maintenance_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self.running = False

        self.stats = {
            "connections_accepted": 0,
            "connections_initiated": 0,
            "connections_rejected": 0,
            "handshakes_completed": 0,
            "handshake_failures": 0,
            "handshake_timeouts": 0,
            "disconnections": 0,
            "messages_received": 0,
            "messages_sent": 0,
            "messages_dropped": 0,
            "malformed_messages": 0,
            "invalid_signatures": 0,
            "transmissions_rejected": 0,
            "handler_errors": 0,
            "route_broadcasts": 0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Start the accept and maintenance loops."""
        if self.running:
            return
        self.running = True
        self._accept_task = asyncio.create_task(self._accept_loop())
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        logger.info(f"Peer manager started for {self.node_id[:16]}...")

    async def stop(self):
        """Cancel the loops and close every connection."""
        self.running = False

        tasks = [t for t in (self._accept_task, self._maintenance_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._accept_task = None
        self._maintenance_task = None

        for peer_id in list(self.peers):
            await self.disconnect(peer_id, reason="shutdown")
        for connection in list(self.connections.values()):
            await self._close_connection(connection, "shutdown")

        background = list(self._background)
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)

        logger.info("Peer manager stopped")

    async def _accept_loop(self):
        while True:
            handle = await self.transport.accept_connection()
            try:
                await self.accept(handle)
            except ConnectionError as e:
                logger.warning(f"Failed to accept connection from {handle.address}: {e}")

    async def _maintenance_loop(self):
        while True:
            await asyncio.sleep(self.config.maintenance_interval_ms / 1000)
            try:
                await self.check_heartbeats()
                self.update_network_metrics()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Peer maintenance failed: {e}")

    def _spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------
    # Connection setup
    # ------------------------------------------------------------------

    def _at_capacity(self) -> bool:
        return len(self.connections) >= self.config.max_connections

    def _open(self, handle: ConnectionHandle, outbound: bool) -> Connection:
        connection = Connection(
            handle=handle,
            inbox=asyncio.Queue(maxsize=self.config.inbox_size),
            state=ConnectionState.CONNECTING if outbound else ConnectionState.HANDSHAKE_INITIATED,
        )
        if outbound:
            connection.ready = asyncio.get_running_loop().create_future()
        self.connections[handle.id] = connection

        self.transport.on_message(handle, lambda data: self._enqueue(connection, data))
        self.transport.on_close(handle, lambda: self._on_transport_closed(connection))
        connection.reader_task = asyncio.create_task(self._read_loop(connection))
        return connection

    async def accept(self, handle: ConnectionHandle) -> Optional[Connection]:
        """
        Take ownership of an inbound connection and wait for its handshake.

        Returns:
            The pending connection, or None if rejected for capacity
        """
        if self._at_capacity():
            self.stats["connections_rejected"] += 1
            logger.warning(f"Max connections reached, rejecting {handle.address}")
            await self.transport.close(handle)
            return None

        self.stats["connections_accepted"] += 1
        logger.debug(f"Accepted connection from {handle.address}")
        return self._open(handle, outbound=False)

    async def connect(self, address: str) -> Entanglement:
        """
        Open an outbound connection and complete the handshake.

        Raises:
            ConnectionError: if the transport cannot connect or the peer hangs up
            HandshakeTimeout: if the peer does not answer within the handshake timeout
            SignatureInvalid: if the peer's handshake does not verify
        """
        if self._at_capacity():
            self.stats["connections_rejected"] += 1
            raise ConnectionError(f"Max connections reached, not connecting to {address}")

        logger.debug(f"Connecting to {address}")
        handle = await self.transport.connect(address)
        self.stats["connections_initiated"] += 1
        connection = self._open(handle, outbound=True)

        connection.state = ConnectionState.HANDSHAKE_INITIATED
        try:
            await self._send(connection, self.codec.build(
                MessageType.HANDSHAKE,
                {"identity": self.context.identity.to_wire(), "nonce": connection.nonce},
            ))
        except ConnectionError:
            connection.ready.cancel()
            await self._close_connection(connection, "handshake send failed")
            raise

        return await connection.ready

    def _enqueue(self, connection: Connection, data: bytes):
        if connection.closed:
            return
        try:
            connection.inbox.put_nowait(data)
        except asyncio.QueueFull:
            self.stats["messages_dropped"] += 1
            logger.warning(f"Inbox full for {connection.handle}, dropping message")

    def _on_transport_closed(self, connection: Connection):
        if connection.closed:
            return
        if connection.peer_id is not None and self._owns(connection):
            self._spawn(self.disconnect(connection.peer_id, reason="connection closed"))
        else:
            self._spawn(self._close_connection(connection, "connection closed"))

    def _owns(self, connection: Connection) -> bool:
        entanglement = self.peers.get(connection.peer_id)
        return entanglement is not None and entanglement.connection_handle.id == connection.handle.id

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def _read_loop(self, connection: Connection):
        """Handshake first, then dispatch messages in arrival order."""
        if not await self._await_handshake(connection):
            return

        while not connection.closed:
            data = await connection.inbox.get()
            await self._dispatch(connection, data)

    async def _await_handshake(self, connection: Connection) -> bool:
        deadline = asyncio.get_running_loop().time() + self.config.handshake_timeout_ms / 1000
        try:
            await self._handle_handshake(connection, deadline)
        except HandshakeTimeout as e:
            self.stats["handshake_timeouts"] += 1
            logger.warning(e.message)
            await self._fail_handshake(connection, e)
            return False
        except GhostNetError as e:
            self.stats["handshake_failures"] += 1
            if isinstance(e, SignatureInvalid):
                self.stats["invalid_signatures"] += 1
            logger.warning(f"Handshake with {connection.handle.address} failed: {e.message}")
            await self._fail_handshake(connection, e)
            return False
        except ConnectionError as e:
            logger.warning(f"Connection to {connection.handle.address} lost during handshake: {e}")
            await self._fail_handshake(connection, e)
            return False

        return True

    async def _next_handshake_message(self, connection: Connection, deadline: float) -> bytes:
        remaining = deadline - asyncio.get_running_loop().time()
        try:
            return await asyncio.wait_for(connection.inbox.get(), timeout=max(0.0, remaining))
        except asyncio.TimeoutError:
            raise HandshakeTimeout(connection.handle.address, self.config.handshake_timeout_ms)

    async def _fail_handshake(self, connection: Connection, error: Exception):
        if connection.ready is not None and not connection.ready.done():
            connection.ready.set_exception(error)
        if connection.peer_id is not None and self._owns(connection):
            await self.disconnect(connection.peer_id, reason=str(error))
        else:
            await self._close_connection(connection, str(error))

    def _read_handshake(self, data: bytes) -> HandshakeBody:
        """
        Decode and authenticate one handshake message.

        Raises:
            MalformedMessage: if the message is not a well-formed handshake
            SignatureInvalid: on id/key mismatch or bad signature
            GhostNetError: if the handshake carries our own id
        """
        message, envelope = self.codec.decode(data)
        if envelope.type != MessageType.HANDSHAKE.value:
            raise MalformedMessage(f"Expected handshake, got {envelope.type}")
        body: HandshakeBody = self.codec.parse_body(envelope, message)

        identity = body.identity
        if identity.id != envelope.peer_id:
            raise SignatureInvalid("Handshake identity does not match sender")
        if identity.id == self.node_id:
            raise GhostNetError("Refusing connection to self", code="self_connection")

        try:
            public_key = bytes.fromhex(identity.public_key)
        except ValueError:
            raise SignatureInvalid("Handshake public key is not hex")
        if not self.context.signatures.register_peer_key(identity.id, public_key):
            raise SignatureInvalid(f"Public key does not belong to {identity.id[:16]}...")
        if not self.codec.verify(message):
            raise SignatureInvalid(f"Handshake signature from {identity.id[:16]}... failed")
        return body

    def _check_admission(self, peer_id: str):
        if peer_id in self.peers:
            raise GhostNetError(f"Already entangled with {peer_id[:16]}...", code="duplicate_peer")
        if len(self.peers) >= self.config.max_connections:
            raise GhostNetError("Max connections reached", code="capacity")

    def _handshake_message(self, connection: Connection, reply_to: str) -> Dict[str, Any]:
        return self.codec.build(
            MessageType.HANDSHAKE,
            {
                "identity": self.context.identity.to_wire(),
                "nonce": connection.nonce,
                "replyTo": reply_to,
            },
        )

    async def _handle_handshake(self, connection: Connection, deadline: float):
        """
        Run the handshake exchange and establish the entanglement.

            initiator -> HANDSHAKE {nonce: n1}
            responder -> HANDSHAKE {nonce: n2, replyTo: n1}
            initiator -> HANDSHAKE {nonce: n1, replyTo: n2}

        Each side only admits the peer once the other has signed its fresh
        nonce, so a captured handshake cannot be replayed to claim an id.

        Raises:
            HandshakeTimeout: if the exchange does not finish before deadline
            MalformedMessage: if a handshake message is not well formed
            SignatureInvalid: on id/key mismatch, bad signature or wrong reply nonce
            GhostNetError: for self, duplicate or over-capacity connections
        """
        body = self._read_handshake(await self._next_handshake_message(connection, deadline))
        identity = body.identity
        self._check_admission(identity.id)

        if connection.handle.outbound:
            if body.reply_to != connection.nonce:
                raise SignatureInvalid("Handshake reply does not answer our nonce")
            await self._send(connection, self._handshake_message(connection, reply_to=body.nonce))
        else:
            await self._send(connection, self._handshake_message(connection, reply_to=body.nonce))
            confirmation = self._read_handshake(await self._next_handshake_message(connection, deadline))
            if confirmation.identity.id != identity.id or confirmation.reply_to != connection.nonce:
                raise SignatureInvalid("Handshake confirmation does not answer our nonce")

        # Checked again after the awaits above; _establish registers the
        # peer before it next yields
        self._check_admission(identity.id)
        connection.peer_id = identity.id
        connection.state = ConnectionState.VERIFIED

        await self._establish(connection, identity.affinity_base, identity.created_at)

    async def _establish(self, connection: Connection, remote_affinity: float, remote_created_at: int):
        now = self.context.now()
        entanglement = Entanglement(
            peer_id=connection.peer_id,
            connection_handle=connection.handle,
            established_at=now,
            last_heartbeat_at=now,
            remote_affinity=remote_affinity,
            remote_created_at=remote_created_at,
        )
        self.peers[entanglement.peer_id] = entanglement
        self.dead_peers.pop(entanglement.peer_id, None)
        connection.state = ConnectionState.ACTIVE

        # Initial optimism
        self.routing.record_strength(entanglement.peer_id, 1.0)

        connection.heartbeat_task = asyncio.create_task(self._heartbeat_loop(connection))
        self.stats["handshakes_completed"] += 1
        logger.info(f"Entangled with {entanglement.peer_id[:16]}... at {connection.handle.address}")

        await self._send(connection, self.codec.build(
            MessageType.STATE, {"state": self.context.affinity.to_wire()}
        ))

        if connection.ready is not None and not connection.ready.done():
            connection.ready.set_result(entanglement)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, connection: Connection, data: bytes):
        """Authenticate and route one message. Errors are logged, never raised."""
        entanglement = self.peers.get(connection.peer_id)
        if entanglement is None or not self._owns(connection):
            return

        self.stats["messages_received"] += 1
        self.metrics.record_message_size(len(data))

        try:
            message, envelope = self.codec.decode(data)

            if envelope.peer_id != entanglement.peer_id:
                raise SignatureInvalid(
                    f"Message claims {envelope.peer_id[:16]}... on connection of "
                    f"{entanglement.peer_id[:16]}..."
                )
            if not self.codec.verify(message):
                raise SignatureInvalid(
                    f"Invalid or stale signature on {envelope.type} from "
                    f"{entanglement.peer_id[:16]}..."
                )

            self._observe_latency(entanglement, envelope.timestamp)
            entanglement.messages_received += 1

            body = self.codec.parse_body(envelope, message)
            await self._handlers[MessageType(envelope.type)](entanglement, body)

        except SignatureInvalid as e:
            self.stats["invalid_signatures"] += 1
            logger.warning(f"Dropped message: {e.message}")
        except MalformedMessage as e:
            self.stats["malformed_messages"] += 1
            logger.warning(f"Malformed message from {entanglement.peer_id[:16]}...: {e.message}")
        except GhostNetError as e:
            self.stats["transmissions_rejected"] += 1
            logger.warning(f"Rejected message from {entanglement.peer_id[:16]}...: {e.message}")
        except ConnectionError as e:
            logger.info(f"Connection to {entanglement.peer_id[:16]}... lost: {e}")
            self._spawn(self.disconnect(entanglement.peer_id, reason="send failed"))
        except Exception as e:
            self.stats["handler_errors"] += 1
            logger.error(f"Error handling message from {entanglement.peer_id[:16]}...: {e}")

    def _observe_latency(self, entanglement: Entanglement, timestamp: int):
        latency = max(0, self.context.now() - timestamp)
        self.routing.record_latency(entanglement.peer_id, latency)
        entanglement.average_latency = self.routing.get_latency(entanglement.peer_id) or 0.0

    async def _on_handshake_after_established(self, entanglement: Entanglement, body: HandshakeBody):
        logger.warning(f"Ignoring repeated handshake from {entanglement.peer_id[:16]}...")

    async def _on_state(self, entanglement: Entanglement, body: StateBody):
        entanglement.remote_affinity = body.state.consciousness
        entanglement.last_resonance = entanglement.resonance
        entanglement.resonance = self.context.resonance(
            self.context.affinity.level,
            entanglement.remote_affinity,
            self.context.identity.created_at,
        )

        if self.routing.record_strength(entanglement.peer_id, entanglement.resonance):
            await self.broadcast_routes(exclude={entanglement.peer_id})

        logger.debug(
            f"State from {entanglement.peer_id[:16]}...: affinity {entanglement.remote_affinity:.3f}, "
            f"resonance {entanglement.resonance:.3f}"
        )

    async def _on_pulse(self, entanglement: Entanglement, body: PulseBody):
        entanglement.last_heartbeat_at = self.context.now()
        entanglement.remote_affinity = body.state.consciousness

    async def _on_transmission(self, entanglement: Entanglement, body: TransmissionBody):
        await self.pipeline.process(body.content, entanglement.peer_id)

    async def _on_route(self, entanglement: Entanglement, body: RouteBody):
        self.routing.apply_route_hint(
            entanglement.peer_id,
            ((hint.peer_id, hint.strength, hint.latency) for hint in body.routes),
        )

    # ------------------------------------------------------------------
    # Heartbeat and cleanup
    # ------------------------------------------------------------------

    async def _heartbeat_loop(self, connection: Connection):
        while not connection.closed:
            await asyncio.sleep(self.config.heartbeat_interval_ms / 1000)
            try:
                await self._send(connection, self.codec.build(
                    MessageType.PULSE, {"state": self.context.affinity.to_wire()}
                ))
            except ConnectionError as e:
                logger.info(f"Pulse to {str(connection.peer_id)[:16]}... failed: {e}")
                if connection.peer_id is not None:
                    await self.disconnect(connection.peer_id, reason="pulse failed")
                return

    async def check_heartbeats(self, now: Optional[int] = None) -> List[str]:
        """
        Disconnect peers silent for longer than the connection timeout.

        Returns:
            Ids of the peers that were disconnected
        """
        if now is None:
            now = self.context.now()

        timed_out = [
            peer_id for peer_id, entanglement in self.peers.items()
            if now - entanglement.last_heartbeat_at > self.config.connection_timeout_ms
        ]
        for peer_id in timed_out:
            logger.warning(f"Heartbeat timeout for {peer_id[:16]}...")
            await self.disconnect(peer_id, reason="heartbeat timeout")
        return timed_out

    async def disconnect(self, peer_id: str, reason: str = "requested") -> bool:
        """
        Tear down an entanglement. A second call for the same peer is a no-op.

        Returns:
            True if the peer was connected
        """
        entanglement = self.peers.pop(peer_id, None)
        if entanglement is None:
            return False

        entanglement.state = ConnectionState.DISCONNECTED
        self.dead_peers[peer_id] = self.context.now()
        while len(self.dead_peers) > DEAD_PEER_MEMORY:
            self.dead_peers.popitem(last=False)

        self.routing.remove_peer(peer_id)
        self.stats["disconnections"] += 1
        logger.info(f"Disconnected {peer_id[:16]}... ({reason})")

        connection = self.connections.get(entanglement.connection_handle.id)
        if connection is not None:
            await self._close_connection(connection, reason)
        return True

    async def _close_connection(self, connection: Connection, reason: str):
        if connection.closed:
            return
        connection.closed = True
        connection.state = ConnectionState.DISCONNECTED
        self.connections.pop(connection.handle.id, None)

        current = asyncio.current_task()
        tasks = [
            task for task in (connection.reader_task, connection.heartbeat_task)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()

        await self.transport.close(connection.handle)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if connection.ready is not None and not connection.ready.done():
            connection.ready.set_exception(ConnectionError(f"Connection closed: {reason}"))
        logger.debug(f"Closed connection {connection.handle} ({reason})")

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def _send(self, connection: Connection, message: Dict[str, Any]):
        await self.transport.send(connection.handle, self.codec.encode(message))
        self.stats["messages_sent"] += 1

    async def broadcast(
        self,
        message_type: MessageType,
        fields: Dict[str, Any],
        exclude: Optional[Iterable[str]] = None
    ) -> int:
        """
        Sign one message and send it to every active peer.

        Returns:
            Number of peers the message was handed to
        """
        excluded = set(exclude or ())
        data = self.codec.encode(self.codec.build(message_type, fields))

        sent = 0
        for peer_id, entanglement in list(self.peers.items()):
            if peer_id in excluded:
                continue
            try:
                await self.transport.send(entanglement.connection_handle, data)
            except ConnectionError as e:
                logger.warning(f"Send to {peer_id[:16]}... failed: {e}")
                self._spawn(self.disconnect(peer_id, reason="send failed"))
                continue
            sent += 1
            self.stats["messages_sent"] += 1
        return sent

    async def send_state(self) -> int:
        """Broadcast the local affinity state."""
        return await self.broadcast(MessageType.STATE, {"state": self.context.affinity.to_wire()})

    async def broadcast_routes(self, exclude: Optional[Iterable[str]] = None) -> int:
        """Advertise the local route fragment."""
        self.stats["route_broadcasts"] += 1
        return await self.broadcast(
            MessageType.ROUTE, {"routes": self.routing.route_fragment()}, exclude=exclude
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_peer(self, peer_id: str) -> Optional[Entanglement]:
        return self.peers.get(peer_id)

    def get_peers(self) -> List[Dict[str, Any]]:
        """Peer summaries, highest resonance first, then by peer id."""
        ordered = sorted(self.peers.values(), key=lambda e: (-e.resonance, e.peer_id))
        return [e.summary(self.routing.get_strength(e.peer_id)) for e in ordered]

    def update_network_metrics(self):
        """Refresh network metrics and the local resonance average."""
        self.metrics.update(
            resonances={peer_id: e.resonance for peer_id, e in self.peers.items()},
            strengths={
                peer_id: strength for peer_id, strength in self.routing.strengths.items()
                if peer_id in self.peers
            },
            latencies=self.routing.latencies,
            local_affinity=self.context.affinity.level,
        )
        self.context.affinity.resonance = self.metrics.average_resonance

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "active_peers": len(self.peers),
            "open_connections": len(self.connections),
            "dead_peers": len(self.dead_peers),
            "network": self.metrics.snapshot(),
        }
